# welcome to the ltcpay settlement node
# one payment request, one throwaway key, one receiving address. nothing is ever reused


# flow:


# a payment request gets a fresh secp256k1 key and a native segwit (p2wpkh) address
# the private key is sealed with aes-256-gcm under the operator's master key before it
# ever leaves the key vault, and the row that reaches the store only carries ciphertext

# a poller walks every open payment on a fixed interval and asks an electrum server
# for balance, unspent outputs and the chain tip. once the confirmed balance covers the
# requested amount and every unspent output is buried deep enough, the payment completes

# completed payments are swept: every sufficiently confirmed output is spent into the
# operator's custodial address in a single transaction, signed with the key that is
# decrypted for that one signing step and wiped right after


# custody:


# the master key (WIF_KEY) is 32 bytes of hex and is loaded once at startup
# a missing or malformed master key stops the node before it touches the network
# a ciphertext that fails authentication is never retried; the payment is quarantined


from typing import Final, Optional, Dict, Any, Tuple, List, Iterable, Callable
import asyncio
import argparse
import sys
import logging
import json
import os
import hashlib
import hmac
import secrets
import ssl
import struct
import time
import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_CEILING

from dotenv import load_dotenv

# HTTP imports for the completion webhook
import requests

# Electrum-over-WebSocket transport
import websockets
from websockets.asyncio.client import connect as ws_connect

# Cryptography imports
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import ecdsa
from ecdsa import SECP256k1
from ecdsa.util import sigencode_der_canonize
from Crypto.Hash import RIPEMD160

# Storage imports
from sqlalchemy import BigInteger, Boolean, Column, String, Text, create_engine, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

import uvicorn

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
LOG = logging.getLogger('[LTCPAY_NODE]')

SATS_PER_COIN: Final[int] = 100_000_000

CONFIG: Final[Dict[str, Any]] = {
    "VERSION": "1.0.0",
    "NETWORK": "litecoin",
    "ELECTRUM_HOST": "electrum.ltc.xurious.com",
    "ELECTRUM_PORT": 50001,
    "ELECTRUM_SSL": False,
    # Public Electrum servers mostly present self-signed certificates.
    "ELECTRUM_SSL_VERIFY": False,
    "ELECTRUM_WEBSOCKET": False,
    "ELECTRUM_TIMEOUT_SECONDS": 15.0,
    "ELECTRUM_CLIENT_NAME": "ltc-payments/1.0",
    "ELECTRUM_PROTOCOL_VERSION": "1.4",
    "RPC_MAX_ATTEMPTS": 3,
    "RPC_RETRY_WAIT_SECONDS": 0.5,
    "FEE_TARGET_BLOCKS": 6,
    "MAIN_ADDRESS": None,  # Custodial sweep destination (required)
    "CONFIRMATIONS": 2,
    "WIF_KEY": None,  # 32-byte master key, hex (required)
    "POLL_INTERVAL_SECONDS": 10.0,
    # Every Nth cycle also revisits completed/expired payments for late funds (1h at 10s).
    "COLD_SWEEP_EVERY_CYCLES": 360,
    "PAYMENT_TTL_SECONDS": 0,  # 0 disables expiry
    "DB_URL": "sqlite:///payments.db",
    "WEBHOOK_URL": None,
    "WEBHOOK_SECRET": None,
    "API_BIND": "0.0.0.0",
    "API_PORT": 3000,
    "LOG_LEVEL": "INFO",
}


@dataclass(frozen=True)
class NetworkParams:
    """Address parameters of a segwit-capable chain."""
    name: str
    bech32_hrp: str
    max_money_sats: int


NETWORKS: Final[Dict[str, NetworkParams]] = {
    "litecoin": NetworkParams("litecoin", "ltc", 84_000_000 * SATS_PER_COIN),
    "litecoin-testnet": NetworkParams("litecoin-testnet", "tltc", 84_000_000 * SATS_PER_COIN),
    "bitcoin": NetworkParams("bitcoin", "bc", 21_000_000 * SATS_PER_COIN),
    "bitcoin-testnet": NetworkParams("bitcoin-testnet", "tb", 21_000_000 * SATS_PER_COIN),
}

STATUS_PENDING: Final[str] = "pending"
STATUS_COMPLETED: Final[str] = "completed"
STATUS_EXPIRED: Final[str] = "expired"
TERMINAL_STATUSES: Final[frozenset] = frozenset({STATUS_COMPLETED, STATUS_EXPIRED})


# ============================================================================
# ERRORS
# ============================================================================

class LtcPayError(Exception):
    """Base class for every error raised by the settlement node."""


class ConfigError(LtcPayError):
    """Invalid or missing configuration. Fatal at startup."""


class ValidationError(LtcPayError):
    """Rejected payment request (never persisted)."""


class AddressCollisionError(LtcPayError):
    """A freshly issued address or id already exists in the store."""


class PaymentNotFound(LtcPayError):
    pass


class ChainUnavailableError(LtcPayError):
    """Electrum RPC exhausted its retries. Try again next poll cycle."""


class ElectrumError(LtcPayError):
    """The Electrum server answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: Any):
        self.method = method
        self.error = error
        if isinstance(error, dict):
            message = error.get("message") or str(error)
            code = error.get("code")
        else:
            message = str(error)
            code = None
        super().__init__(f"{method} failed (code={code}): {message}")


class BroadcastRejected(ElectrumError):
    """The network refused a signed sweep transaction."""


class DecryptionError(LtcPayError):
    """Encrypted key failed authentication (tampered row or wrong master key)."""


class KeyMismatchError(LtcPayError):
    """Decrypted key does not derive the payment's receiving address."""


class InsufficientFundsAfterFee(LtcPayError):
    """Eligible inputs do not cover the sweep fee. Nothing to do yet."""

    def __init__(self, total_input: int, fee: int):
        self.total_input = total_input
        self.fee = fee
        super().__init__(f"inputs {total_input} sats do not cover fee {fee} sats")


class WebhookError(LtcPayError):
    pass


# ============================================================================
# ADDRESS & SCRIPT ENCODING
# ============================================================================

def sha256d(data: bytes) -> bytes:
    """Double SHA-256."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3
_BECH32_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)


def _bech32_polymod(values: Iterable[int]) -> int:
    chk = 1
    for v in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            if (top >> i) & 1:
                chk ^= _BECH32_GENERATOR[i]
    return chk


def _bech32_hrp_expand(hrp: str) -> List[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _bech32_checksum(hrp: str, data: List[int], const: int) -> List[int]:
    polymod = _bech32_polymod(_bech32_hrp_expand(hrp) + data + [0] * 6) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def _convertbits(data: Iterable[int], frombits: int, tobits: int, pad: bool = True) -> Optional[List[int]]:
    acc = 0
    bits = 0
    out = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1
    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            out.append((acc >> bits) & maxv)
    if pad:
        if bits:
            out.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None
    return out


def encode_segwit_address(hrp: str, witness_version: int, program: bytes) -> str:
    """Encode a witness program as a bech32 (v0) or bech32m (v1+) address."""
    const = _BECH32_CONST if witness_version == 0 else _BECH32M_CONST
    data = [witness_version] + _convertbits(program, 8, 5)
    combined = data + _bech32_checksum(hrp, data, const)
    return hrp + "1" + "".join(_BECH32_CHARSET[d] for d in combined)


def decode_segwit_address(address: str, hrp: Optional[str] = None) -> Tuple[str, int, bytes]:
    """
    Decode a segwit address into (hrp, witness_version, program).

    Args:
        address: bech32/bech32m address (either all lower or all upper case)
        hrp: Expected human-readable part; mismatches are rejected

    Returns:
        Tuple of (hrp, witness_version, witness_program)

    Raises:
        ValueError: If the address is malformed, has a bad checksum or belongs to another network
    """
    if not isinstance(address, str):
        raise TypeError("address must be str")
    if any(ord(c) < 33 or ord(c) > 126 for c in address):
        raise ValueError("Invalid address character")
    if address.lower() != address and address.upper() != address:
        raise ValueError("Mixed-case address")
    addr = address.lower()
    pos = addr.rfind("1")
    if pos < 1 or pos + 7 > len(addr) or len(addr) > 90:
        raise ValueError("Bad address length or separator")
    if not all(c in _BECH32_CHARSET for c in addr[pos + 1:]):
        raise ValueError("Invalid address character")

    got_hrp = addr[:pos]
    data = [_BECH32_CHARSET.find(c) for c in addr[pos + 1:]]
    const = _bech32_polymod(_bech32_hrp_expand(got_hrp) + data)
    if const not in (_BECH32_CONST, _BECH32M_CONST):
        raise ValueError("Bad checksum")
    if hrp is not None and got_hrp != hrp:
        raise ValueError(f"Address is for network '{got_hrp}', expected '{hrp}'")

    data = data[:-6]
    if not data:
        raise ValueError("Empty witness data")
    witness_version = data[0]
    program = _convertbits(data[1:], 5, 8, pad=False)
    if program is None or not (2 <= len(program) <= 40):
        raise ValueError("Bad witness program")
    if witness_version > 16:
        raise ValueError(f"Unsupported witness version: {witness_version}")
    if witness_version == 0 and len(program) not in (20, 32):
        raise ValueError("v0 witness program must be 20 or 32 bytes")
    expected_const = _BECH32_CONST if witness_version == 0 else _BECH32M_CONST
    if const != expected_const:
        raise ValueError("Wrong checksum variant for witness version")
    return got_hrp, witness_version, bytes(program)


def witness_script(witness_version: int, program: bytes) -> bytes:
    opcode = 0x50 + witness_version if witness_version else 0x00
    return bytes([opcode, len(program)]) + program


def address_to_script(address: str) -> bytes:
    """Locking script (scriptPubKey) of a segwit address."""
    _, version, program = decode_segwit_address(address)
    return witness_script(version, program)


def address_to_scripthash(address: str) -> str:
    """
    Electrum lookup key for an address.

    sha256 of the serialized scriptPubKey, byte order reversed, lowercase hex.
    """
    return hashlib.sha256(address_to_script(address)).digest()[::-1].hex()


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Convert private key to compressed public key using secp256k1.

    Args:
        private_key: 32-byte private key

    Returns:
        33-byte compressed public key (0x02/0x03 prefix + x-coordinate)
    """
    sk = ecdsa.SigningKey.from_string(bytes(private_key), curve=SECP256k1)
    point = sk.get_verifying_key().pubkey.point
    prefix = b'\x02' if point.y() % 2 == 0 else b'\x03'
    return prefix + int(point.x()).to_bytes(32, 'big')


def p2wpkh_address(pubkey: bytes, hrp: str) -> str:
    if len(pubkey) != 33:
        raise ValueError(f"Invalid pubkey length: {len(pubkey)}, expected 33 (compressed)")
    return encode_segwit_address(hrp, 0, hash160(pubkey))


def p2wpkh_script(pubkey: bytes) -> bytes:
    return witness_script(0, hash160(pubkey))


# ============================================================================
# KEY VAULT
# ============================================================================

MASTER_KEY_BYTES: Final[int] = 32
NONCE_BYTES: Final[int] = 12
TAG_BYTES: Final[int] = 16


def load_master_key(key_hex: Optional[str]) -> bytes:
    """Parse the process-wide master key. Any problem is a ConfigError."""
    if not key_hex:
        raise ConfigError("WIF_KEY is not set")
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as e:
        raise ConfigError("WIF_KEY must be hex") from e
    if len(key) != MASTER_KEY_BYTES:
        raise ConfigError(f"WIF_KEY must be {MASTER_KEY_BYTES}-byte hex ({MASTER_KEY_BYTES * 2} chars), got {len(key)} bytes")
    return key


class KeyVault:
    """
    Issues single-use receiving keys and keeps their private halves sealed.

    Sealed format (hex): nonce (12) || GCM tag (16) || ciphertext, where the
    plaintext is the 32-byte secret as lowercase hex.
    """

    def __init__(self, master_key: bytes, network: NetworkParams):
        if not isinstance(master_key, (bytes, bytearray)) or len(master_key) != MASTER_KEY_BYTES:
            raise ConfigError(f"master key must be {MASTER_KEY_BYTES} bytes")
        self._aead = AESGCM(bytes(master_key))
        self.network = network

    def create_address(self) -> Tuple[str, str]:
        """
        Generate a fresh key and its P2WPKH receiving address.

        Returns:
            Tuple of (address, encrypted_key_hex). The plaintext key never leaves this call.
        """
        sk = ecdsa.SigningKey.generate(curve=SECP256k1)
        private_key = sk.to_string()
        pubkey = private_key_to_public_key(private_key)
        address = p2wpkh_address(pubkey, self.network.bech32_hrp)
        return address, self.encrypt(private_key)

    def encrypt(self, private_key: bytes) -> str:
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, bytes(private_key).hex().encode("ascii"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return (nonce + tag + ciphertext).hex()

    def decrypt(self, encrypted_key: str) -> bytearray:
        """
        Open a sealed key.

        Returns:
            32-byte private key as a bytearray the caller is expected to zero

        Raises:
            DecryptionError: If the blob is malformed or fails authentication
        """
        try:
            blob = bytes.fromhex(encrypted_key)
        except (TypeError, ValueError) as e:
            raise DecryptionError("encrypted key is not valid hex") from e
        if len(blob) <= NONCE_BYTES + TAG_BYTES:
            raise DecryptionError("encrypted key is truncated")

        nonce = blob[:NONCE_BYTES]
        tag = blob[NONCE_BYTES:NONCE_BYTES + TAG_BYTES]
        ciphertext = blob[NONCE_BYTES + TAG_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("encrypted key failed authentication") from e

        try:
            key = bytearray.fromhex(plaintext.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError("decrypted key is not hex") from e
        if len(key) != 32:
            raise DecryptionError(f"decrypted key has {len(key)} bytes, expected 32")
        return key


# ============================================================================
# ELECTRUM CLIENT
# ============================================================================

ELECTRUM_MAX_MESSAGE_BYTES: Final[int] = 16 * 1024 * 1024


@dataclass(frozen=True)
class Balance:
    confirmed: int
    unconfirmed: int


@dataclass(frozen=True)
class HistoryEntry:
    tx_hash: str
    height: int


@dataclass(frozen=True)
class Utxo:
    tx_hash: str
    tx_pos: int
    value: int
    height: int

    @property
    def outpoint(self) -> Tuple[str, int]:
        return self.tx_hash, self.tx_pos


class _StreamTransport:
    """Newline-delimited JSON-RPC over TCP or TLS."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    @classmethod
    async def open(cls, host: str, port: int, ssl_context: Optional[ssl.SSLContext], timeout: float):
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ssl_context, limit=ELECTRUM_MAX_MESSAGE_BYTES),
            timeout=timeout,
        )
        return cls(reader, writer)

    async def send(self, message: str) -> None:
        self._writer.write(message.encode("utf-8") + b"\n")
        await self._writer.drain()

    async def recv(self) -> str:
        line = await self._reader.readline()
        if not line:
            raise ConnectionError("connection closed by server")
        return line.decode("utf-8")

    async def close(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError:
            pass


class _WebSocketTransport:
    """JSON-RPC messages carried as WebSocket text frames."""

    def __init__(self, ws):
        self._ws = ws

    @classmethod
    async def open(cls, url: str, ssl_context: Optional[ssl.SSLContext], timeout: float):
        kwargs: Dict[str, Any] = {
            "open_timeout": timeout,
            "close_timeout": 5,
            "max_size": ELECTRUM_MAX_MESSAGE_BYTES,
            "ping_interval": 20,
            "ping_timeout": 20,
        }
        if ssl_context is not None:
            kwargs["ssl"] = ssl_context
        ws = await asyncio.wait_for(ws_connect(url, **kwargs), timeout=timeout + 5.0)
        return cls(ws)

    async def send(self, message: str) -> None:
        await self._ws.send(message)

    async def recv(self) -> str:
        data = await self._ws.recv()
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    async def close(self) -> None:
        await self._ws.close()


# Failures that warrant dropping the connection and trying again.
_TRANSIENT_ERRORS = (
    OSError,
    ConnectionError,
    asyncio.TimeoutError,
    asyncio.IncompleteReadError,
    json.JSONDecodeError,
    websockets.exceptions.WebSocketException,
)


class ElectrumClient:
    """
    Owned handle to one Electrum server.

    Every request is attempted up to `max_attempts` times; a transport failure
    drops the connection and the next attempt reconnects (and re-handshakes).
    After the last attempt the call fails with ChainUnavailableError. Error
    objects returned by the server are raised as ElectrumError without retry.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        use_ssl: bool = False,
        verify_ssl: bool = False,
        use_websocket: bool = False,
        timeout: float = 15.0,
        max_attempts: int = 3,
        retry_wait: float = 0.5,
        fee_target_blocks: int = 6,
        client_name: str = "ltc-payments/1.0",
        protocol_version: str = "1.4",
    ):
        self.host = host
        self.port = int(port)
        self.use_ssl = use_ssl
        self.verify_ssl = verify_ssl
        self.use_websocket = use_websocket
        self.timeout = float(timeout)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_wait = float(retry_wait)
        self.fee_target_blocks = int(fee_target_blocks)
        self.client_name = client_name
        self.protocol_version = protocol_version

        self._transport = None
        self._lock = asyncio.Lock()
        self._next_id = 0

    @property
    def url(self) -> str:
        if self.use_websocket:
            scheme = "wss" if self.use_ssl else "ws"
        else:
            scheme = "ssl" if self.use_ssl else "tcp"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        return self._transport is not None

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.use_ssl:
            return None
        ctx = ssl.create_default_context()
        if not self.verify_ssl:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def _open(self):
        LOG.debug(f"Connecting to Electrum server {self.url}...")
        ctx = self._ssl_context()
        if self.use_websocket:
            transport = await _WebSocketTransport.open(self.url, ctx, self.timeout)
        else:
            transport = await _StreamTransport.open(self.host, self.port, ctx, self.timeout)

        try:
            server_version = await self._call(
                transport, "server.version", [self.client_name, self.protocol_version]
            )
        except BaseException:
            await transport.close()
            raise
        LOG.info(f"Success: Electrum server ready at {self.url} (version: {server_version})")
        return transport

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except _TRANSIENT_ERRORS:
            pass

    async def _call(self, transport, method: str, params: Iterable[Any]) -> Any:
        self._next_id += 1
        request_id = self._next_id
        await transport.send(json.dumps({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": list(params),
        }))

        while True:
            raw = await asyncio.wait_for(transport.recv(), timeout=self.timeout)
            message = json.loads(raw)
            # Subscriptions push notifications on the same stream; skip them.
            if not isinstance(message, dict) or message.get("id") != request_id:
                LOG.debug(f"Ignoring unsolicited Electrum message: {raw[:120]!r}")
                continue
            if message.get("error"):
                raise ElectrumError(method, message["error"])
            return message.get("result")

    async def request(self, method: str, params: Iterable[Any] = ()) -> Any:
        """
        Call an Electrum method with reconnect-and-retry.

        Raises:
            ChainUnavailableError: After `max_attempts` transport failures
            ElectrumError: If the server returned an error object
        """
        params = list(params)
        async with self._lock:
            last_error: Optional[BaseException] = None
            for attempt in range(1, self.max_attempts + 1):
                try:
                    if self._transport is None:
                        self._transport = await self._open()
                    LOG.debug(f"[RPC] {method} {params} (attempt {attempt})")
                    result = await self._call(self._transport, method, params)
                    LOG.debug(f"[RPC] {method} ok")
                    return result
                except _TRANSIENT_ERRORS as e:
                    last_error = e
                    LOG.warning(f"[RPC] {method} failed (attempt {attempt}/{self.max_attempts}): {e!r}")
                    await self._drop_transport()
                    if attempt < self.max_attempts and self.retry_wait > 0:
                        await asyncio.sleep(self.retry_wait * attempt)
            raise ChainUnavailableError(
                f"{method} failed after {self.max_attempts} attempts: {last_error!r}"
            ) from last_error

    async def connect(self) -> None:
        """Open the connection eagerly (a server.ping round trip)."""
        await self.request("server.ping")

    async def close(self) -> None:
        async with self._lock:
            await self._drop_transport()

    async def get_balance(self, address: str) -> Balance:
        result = await self.request("blockchain.scripthash.get_balance", [address_to_scripthash(address)])
        result = result or {}
        return Balance(
            confirmed=int(result.get("confirmed", 0) or 0),
            unconfirmed=int(result.get("unconfirmed", 0) or 0),
        )

    async def get_history(self, address: str) -> List[HistoryEntry]:
        result = await self.request("blockchain.scripthash.get_history", [address_to_scripthash(address)])
        return [
            HistoryEntry(tx_hash=str(entry["tx_hash"]), height=int(entry.get("height", 0) or 0))
            for entry in (result or [])
        ]

    async def list_unspent(self, address: str) -> List[Utxo]:
        result = await self.request("blockchain.scripthash.listunspent", [address_to_scripthash(address)])
        return [
            Utxo(
                tx_hash=str(entry["tx_hash"]),
                tx_pos=int(entry["tx_pos"]),
                value=int(entry["value"]),
                height=int(entry.get("height", 0) or 0),
            )
            for entry in (result or [])
        ]

    async def get_tip_height(self) -> int:
        header = await self.request("blockchain.headers.subscribe")
        header = header or {}
        height = header.get("height", header.get("block_height"))
        if height is None:
            raise ElectrumError("blockchain.headers.subscribe", f"no height in response: {header!r}")
        return int(height)

    async def estimate_fee_rate(self) -> int:
        """
        Current fee rate in sat/vB for the configured confirmation target.

        The server answers in coins per kB; -1 means it has no estimate, in
        which case the floor of 1 sat/vB is used.
        """
        estimate = await self.request("blockchain.estimatefee", [self.fee_target_blocks])
        try:
            per_kb = Decimal(str(estimate))
        except InvalidOperation:
            per_kb = Decimal(-1)
        if not per_kb.is_finite() or per_kb <= 0:
            LOG.warning(f"No fee estimate from server ({estimate!r}); using 1 sat/vB")
            return 1
        rate = int((per_kb * SATS_PER_COIN / 1000).to_integral_value(rounding=ROUND_CEILING))
        return max(rate, 1)

    async def broadcast(self, raw_tx_hex: str) -> str:
        method = "blockchain.transaction.broadcast"
        try:
            txid = await self.request(method, [raw_tx_hex])
        except BroadcastRejected:
            raise
        except ElectrumError as e:
            raise BroadcastRejected(method, e.error) from e
        # Pre-1.1 servers report rejections as a plain string result.
        if not isinstance(txid, str) or len(txid) != 64:
            raise BroadcastRejected(method, f"unexpected broadcast response: {txid!r}")
        return txid


# ============================================================================
# CONFIRMATION TRACKING
# ============================================================================

def confirmation_depth(tip_height: int, output_height: int) -> int:
    """Blocks (inclusive) since an output was mined; 0 while unconfirmed."""
    if output_height <= 0:
        return 0
    return max(tip_height - output_height + 1, 0)


def settlement_reached(confirmed: int, requested: int, depths: List[int], confirmations_required: int) -> bool:
    """All-or-nothing completion gate over one payment's unspent outputs."""
    if confirmed < requested:
        return False
    if not depths:
        return False
    return min(depths) >= confirmations_required


class ConfirmationTracker:
    """Drives the pending -> completed (or expired) transition of a payment."""

    def __init__(
        self,
        chain: "ElectrumClient",
        store: "PaymentStore",
        confirmations_required: int,
        webhook: Optional["CompletionWebhook"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.store = store
        self.confirmations_required = int(confirmations_required)
        self.webhook = webhook
        self._clock = clock

    async def evaluate(self, payment: "Payment") -> str:
        """
        Re-evaluate one payment against the chain.

        Terminal payments are returned untouched. Otherwise the completion gate
        is checked first, then the (optional) expiry deadline.

        Returns:
            The payment's status after evaluation
        """
        if payment.status in TERMINAL_STATUSES:
            return payment.status

        balance = await self.chain.get_balance(payment.address)
        if balance.confirmed >= payment.amount_sats:
            utxos = await self.chain.list_unspent(payment.address)
            tip = await self.chain.get_tip_height()
            depths = [confirmation_depth(tip, u.height) for u in utxos]
            if settlement_reached(balance.confirmed, payment.amount_sats, depths, self.confirmations_required):
                return await self._complete(payment, balance, depths)
            LOG.debug(
                f"Payment {payment.id}: funded, waiting for depth "
                f"{self.confirmations_required} (depths={depths})"
            )
        else:
            LOG.debug(f"Payment {payment.id}: {balance.confirmed}/{payment.amount_sats} sats confirmed")

        if payment.is_expired(self._clock()):
            if self.store.mark_expired(payment.id):
                LOG.info(f"Payment {payment.id} expired before settlement")
                return STATUS_EXPIRED
            return self._stored_status(payment)
        return STATUS_PENDING

    async def _complete(self, payment: "Payment", balance: Balance, depths: List[int]) -> str:
        if not self.store.mark_completed(payment.id):
            return self._stored_status(payment)

        LOG.info(
            f"Success: Payment {payment.id} completed "
            f"({balance.confirmed} sats confirmed, min depth {min(depths)})"
        )
        if self.webhook is not None:
            completed = self.store.get(payment.id) or replace(payment, status=STATUS_COMPLETED)
            try:
                await asyncio.to_thread(self.webhook.send, completed)
            except (requests.RequestException, WebhookError) as e:
                LOG.error(f"Completion webhook for payment {payment.id} failed: {e}")
        return STATUS_COMPLETED

    def _stored_status(self, payment: "Payment") -> str:
        current = self.store.get(payment.id)
        return current.status if current is not None else payment.status


# ============================================================================
# TRANSACTION SERIALIZATION & SIGNING
# ============================================================================

SIGHASH_ALL: Final[int] = 0x01
SEQUENCE_FINAL: Final[int] = 0xFFFFFFFF


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return struct.pack("<B", value)
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def _serialize_outpoint(inp: dict) -> bytes:
    # txids are displayed big-endian but serialized little-endian
    return bytes.fromhex(inp["txid"])[::-1] + struct.pack("<I", int(inp["vout"]))


def _serialize_output(out: dict) -> bytes:
    script = bytes.fromhex(out["script"])
    return struct.pack("<Q", int(out["value"])) + encode_varint(len(script)) + script


def serialize_transaction(tx: dict, include_witness: bool = True) -> bytes:
    """
    Serialize a transaction dict.

    Shape: {"version", "inputs": [{"txid", "vout", "sequence", "witness": [bytes]}],
    "outputs": [{"value", "script" (hex)}], "locktime"}. Inputs never carry a
    scriptSig (native segwit only).
    """
    inputs = tx.get("inputs", [])
    outputs = tx.get("outputs", [])
    has_witness = include_witness and any(inp.get("witness") for inp in inputs)

    parts = [struct.pack("<I", int(tx.get("version", 2)))]
    if has_witness:
        parts.append(b"\x00\x01")
    parts.append(encode_varint(len(inputs)))
    for inp in inputs:
        parts.append(_serialize_outpoint(inp))
        parts.append(encode_varint(0))
        parts.append(struct.pack("<I", int(inp.get("sequence", SEQUENCE_FINAL))))
    parts.append(encode_varint(len(outputs)))
    for out in outputs:
        parts.append(_serialize_output(out))
    if has_witness:
        for inp in inputs:
            items = inp.get("witness") or []
            parts.append(encode_varint(len(items)))
            for item in items:
                parts.append(encode_varint(len(item)) + bytes(item))
    parts.append(struct.pack("<I", int(tx.get("locktime", 0))))
    return b"".join(parts)


def transaction_id(tx: dict) -> str:
    return sha256d(serialize_transaction(tx, include_witness=False))[::-1].hex()


def transaction_vsize(tx: dict) -> int:
    base = len(serialize_transaction(tx, include_witness=False))
    total = len(serialize_transaction(tx, include_witness=True))
    weight = base * 3 + total
    return (weight + 3) // 4


def p2wpkh_script_code(pubkey: bytes) -> bytes:
    """BIP-143 scriptCode for a P2WPKH input (the implied P2PKH script)."""
    return b"\x76\xa9\x14" + hash160(pubkey) + b"\x88\xac"


def bip143_sighash(tx: dict, input_index: int, script_code: bytes, amount: int,
                   sighash_type: int = SIGHASH_ALL) -> bytes:
    """Segwit v0 signature hash (SIGHASH_ALL only)."""
    if sighash_type != SIGHASH_ALL:
        raise ValueError("only SIGHASH_ALL is supported")
    inputs = tx["inputs"]
    hash_prevouts = sha256d(b"".join(_serialize_outpoint(inp) for inp in inputs))
    hash_sequence = sha256d(b"".join(
        struct.pack("<I", int(inp.get("sequence", SEQUENCE_FINAL))) for inp in inputs
    ))
    hash_outputs = sha256d(b"".join(_serialize_output(out) for out in tx["outputs"]))

    inp = inputs[input_index]
    preimage = (
        struct.pack("<I", int(tx.get("version", 2)))
        + hash_prevouts
        + hash_sequence
        + _serialize_outpoint(inp)
        + encode_varint(len(script_code)) + script_code
        + struct.pack("<Q", int(amount))
        + struct.pack("<I", int(inp.get("sequence", SEQUENCE_FINAL)))
        + hash_outputs
        + struct.pack("<I", int(tx.get("locktime", 0)))
        + struct.pack("<I", sighash_type)
    )
    return sha256d(preimage)


def sign_p2wpkh_input(tx: dict, input_index: int, private_key: bytes, pubkey: bytes, amount: int) -> None:
    """
    Sign one P2WPKH input in place.

    Deterministic (RFC 6979) ECDSA with low-S DER encoding; the witness becomes
    [signature || SIGHASH_ALL, compressed pubkey].
    """
    digest = bip143_sighash(tx, input_index, p2wpkh_script_code(pubkey), amount, SIGHASH_ALL)
    sk = ecdsa.SigningKey.from_string(bytes(private_key), curve=SECP256k1)
    signature = sk.sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize)
    tx["inputs"][input_index]["witness"] = [signature + bytes([SIGHASH_ALL]), bytes(pubkey)]
    LOG.debug(f"Signed input #{input_index}")


# ============================================================================
# SWEEP BUILDER
# ============================================================================

# Weight units. Overhead: version, locktime, in/out counts and the segwit marker/flag.
TX_OVERHEAD_WEIGHT: Final[int] = 42
# Outpoint, empty scriptSig and sequence, plus a worst-case witness (73-byte signature, 33-byte key).
P2WPKH_INPUT_WEIGHT: Final[int] = 273
P2WPKH_SCRIPT_BYTES: Final[int] = 22


@dataclass
class SweepPlan:
    inputs: List[Utxo]
    total_input: int
    vsize: int
    fee_rate: int
    fee: int
    send_amount: int


def estimate_sweep_vsize(num_inputs: int, output_script_len: int = P2WPKH_SCRIPT_BYTES) -> int:
    """Upper bound on the vsize of a sweep of `num_inputs` P2WPKH inputs into one output."""
    n = int(num_inputs)
    weight = TX_OVERHEAD_WEIGHT + 4 * (len(encode_varint(n)) - 1)
    weight += 4 * (8 + len(encode_varint(output_script_len)) + output_script_len)
    weight += n * P2WPKH_INPUT_WEIGHT
    return (weight + 3) // 4


def select_eligible_outputs(utxos: Iterable[Utxo], tip_height: int, confirmations_required: int,
                            exclude: Iterable[Tuple[str, int]] = ()) -> List[Utxo]:
    """Every output deep enough to sweep. No coin selection beyond that."""
    excluded = set(exclude)
    return [
        u for u in utxos
        if u.value > 0
        and u.outpoint not in excluded
        and confirmation_depth(tip_height, u.height) >= confirmations_required
    ]


def sweep_send_amount(total_input: int, fee: int) -> int:
    send = int(total_input) - int(fee)
    if send <= 0:
        raise InsufficientFundsAfterFee(total_input, fee)
    return send


def plan_sweep(eligible: List[Utxo], fee_rate: int, output_script_len: int = P2WPKH_SCRIPT_BYTES) -> SweepPlan:
    """
    Size and price a sweep of `eligible`.

    Raises:
        ValueError: If there is nothing to sweep
        InsufficientFundsAfterFee: If the fee eats the whole input value
    """
    if not eligible:
        raise ValueError("no eligible outputs to sweep")
    total_input = sum(u.value for u in eligible)
    vsize = estimate_sweep_vsize(len(eligible), output_script_len)
    fee = vsize * int(fee_rate)
    return SweepPlan(
        inputs=list(eligible),
        total_input=total_input,
        vsize=vsize,
        fee_rate=int(fee_rate),
        fee=fee,
        send_amount=sweep_send_amount(total_input, fee),
    )


def build_sweep_transaction(plan: SweepPlan, destination_script: bytes) -> dict:
    return {
        "version": 2,
        "inputs": [
            {"txid": u.tx_hash, "vout": u.tx_pos, "sequence": SEQUENCE_FINAL, "witness": []}
            for u in plan.inputs
        ],
        "outputs": [{"value": int(plan.send_amount), "script": destination_script.hex()}],
        "locktime": 0,
    }


class SweepBuilder:
    """
    Consolidates a payment's confirmed outputs into the custodial address.

    Outputs spent by a sweep this process broadcast are not spent again while
    the server still knows that sweep. Once the sweep disappears from the
    address history (evicted, never mined), its outputs are sweepable again.
    A payment whose key fails to decrypt is quarantined.
    """

    def __init__(self, chain: ElectrumClient, vault: KeyVault, destination_address: str,
                 confirmations_required: int):
        self.chain = chain
        self.vault = vault
        self.destination_address = destination_address
        self.confirmations_required = int(confirmations_required)
        self._destination_script = address_to_script(destination_address)
        # payment id -> {broadcast txid: outpoints it spends}
        self._broadcasts: Dict[str, Dict[str, frozenset]] = {}
        self._quarantined: set = set()
        self._finished: set = set()

    def is_quarantined(self, payment_id: str) -> bool:
        return payment_id in self._quarantined

    def sweep_finished(self, payment_id: str) -> bool:
        """True when the last sweep left nothing to act on (no outputs, only dust, or quarantined)."""
        return payment_id in self._finished

    async def _outpoints_in_flight(self, payment: "Payment", utxos: List[Utxo]) -> set:
        sweeps = self._broadcasts.get(payment.id)
        if not sweeps:
            return set()

        unspent = {u.outpoint for u in utxos}
        history = None
        for txid, outpoints in list(sweeps.items()):
            if not outpoints & unspent:
                del sweeps[txid]
                continue
            if history is None:
                history = {h.tx_hash for h in await self.chain.get_history(payment.address)}
            if txid not in history:
                LOG.warning(f"Sweep {txid} of payment {payment.id} is unknown to the server; outputs released")
                del sweeps[txid]

        if not sweeps:
            del self._broadcasts[payment.id]
            return set()
        return set().union(*sweeps.values())

    async def sweep(self, payment: "Payment") -> Optional[str]:
        """
        Sweep every sufficiently confirmed output of `payment`.

        Returns:
            Broadcast txid, or None when there is nothing (worth) sweeping

        Raises:
            DecryptionError / KeyMismatchError: Key custody failure (payment quarantined)
            BroadcastRejected: The network refused the transaction
            ChainUnavailableError: Electrum unreachable
        """
        self._finished.discard(payment.id)
        if payment.id in self._quarantined:
            LOG.warning(f"Sweep skipped for payment {payment.id}: key quarantined")
            self._finished.add(payment.id)
            return None

        utxos = await self.chain.list_unspent(payment.address)
        if not utxos:
            self._broadcasts.pop(payment.id, None)
            self._finished.add(payment.id)
            return None
        in_flight = await self._outpoints_in_flight(payment, utxos)
        tip = await self.chain.get_tip_height()
        eligible = select_eligible_outputs(utxos, tip, self.confirmations_required, exclude=in_flight)
        if not eligible:
            LOG.debug(f"Payment {payment.id}: no outputs at depth {self.confirmations_required} yet")
            return None

        fee_rate = await self.chain.estimate_fee_rate()
        try:
            plan = plan_sweep(eligible, fee_rate, len(self._destination_script))
        except InsufficientFundsAfterFee as e:
            LOG.info(f"Sweep skipped for payment {payment.id}: {e}")
            self._finished.add(payment.id)
            return None

        raw_tx, local_txid = self._sign(payment, plan)

        LOG.info(f"Broadcasting sweep for payment {payment.id} ({len(plan.inputs)} input(s))...")
        txid = await self.chain.broadcast(raw_tx.hex())
        self._broadcasts.setdefault(payment.id, {})[txid] = frozenset(u.outpoint for u in plan.inputs)
        if txid != local_txid:
            LOG.warning(f"Server reported txid {txid}, computed {local_txid}")

        LOG.info(f"Success: Sweep broadcast for payment {payment.id}")
        LOG.info(f"  To: {self.destination_address}")
        LOG.info(f"  Swept: {plan.send_amount} sats (inputs {plan.total_input}, fee {plan.fee} @ {plan.fee_rate} sat/vB)")
        LOG.info(f"  Transaction ID: {txid}")
        return txid

    def _sign(self, payment: "Payment", plan: SweepPlan) -> Tuple[bytes, str]:
        try:
            private_key = self.vault.decrypt(payment.encrypted_key)
        except DecryptionError as e:
            self._quarantined.add(payment.id)
            LOG.critical(f"SECURITY: encrypted key of payment {payment.id} failed to decrypt ({e}); sweep quarantined")
            raise

        try:
            pubkey = private_key_to_public_key(private_key)
            if p2wpkh_script(pubkey) != address_to_script(payment.address):
                self._quarantined.add(payment.id)
                LOG.critical(f"SECURITY: key of payment {payment.id} does not match {payment.address}; sweep quarantined")
                raise KeyMismatchError(f"key does not derive {payment.address}")

            tx = build_sweep_transaction(plan, self._destination_script)
            for i, utxo in enumerate(plan.inputs):
                sign_p2wpkh_input(tx, i, private_key, pubkey, utxo.value)
        finally:
            for i in range(len(private_key)):
                private_key[i] = 0

        return serialize_transaction(tx), transaction_id(tx)


# ============================================================================
# PAYMENT STORE
# ============================================================================

Base = declarative_base()


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class Payment:
    id: str
    address: str
    encrypted_key: str = field(repr=False)
    amount_sats: int = 0
    status: str = STATUS_PENDING
    created_at: int = 0
    updated_at: int = 0
    expires_at: int = 0
    txid: Optional[str] = None
    sweep_pending: bool = False

    def is_expired(self, now: float) -> bool:
        return self.expires_at > 0 and self.expires_at < now


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True)
    address = Column(String(90), unique=True, nullable=False)
    encrypted_key = Column(Text, nullable=False)
    amount = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    txid = Column(String(64), nullable=True)  # last sweep broadcast
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False, default=0)
    # set on leaving pending; cleared once the address holds nothing left to sweep
    sweep_pending = Column(Boolean, nullable=False, default=False, index=True)

    def to_payment(self) -> Payment:
        return Payment(
            id=self.id,
            address=self.address,
            encrypted_key=self.encrypted_key,
            amount_sats=int(self.amount),
            status=self.status,
            created_at=int(self.created_at),
            updated_at=int(self.updated_at),
            expires_at=int(self.expires_at or 0),
            txid=self.txid,
            sweep_pending=bool(self.sweep_pending),
        )


class PaymentStore:
    """SQLAlchemy-backed payment rows. Every operation is its own transaction."""

    def __init__(self, url: str = "sqlite:///payments.db"):
        kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self._engine = create_engine(url, **kwargs)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        LOG.info(f"Payment store ready ({self._engine.url.render_as_string(hide_password=True)})")

    def insert(self, payment: Payment) -> None:
        record = PaymentRecord(
            id=payment.id,
            address=payment.address,
            encrypted_key=payment.encrypted_key,
            amount=int(payment.amount_sats),
            status=payment.status,
            txid=payment.txid,
            sweep_pending=payment.sweep_pending,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            expires_at=payment.expires_at,
        )
        with self._sessions() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise AddressCollisionError(
                    f"payment {payment.id} / address {payment.address} already exists"
                ) from e

    def get(self, payment_id: str) -> Optional[Payment]:
        with self._sessions() as session:
            record = session.get(PaymentRecord, payment_id)
            return record.to_payment() if record is not None else None

    def list_open(self) -> List[Payment]:
        """Pending rows plus terminal rows whose address may still hold funds to sweep."""
        return self._list(or_(PaymentRecord.status == STATUS_PENDING, PaymentRecord.sweep_pending.is_(True)))

    def list_all(self) -> List[Payment]:
        return self._list()

    def _list(self, *criteria) -> List[Payment]:
        stmt = select(PaymentRecord).order_by(PaymentRecord.created_at)
        if criteria:
            stmt = stmt.where(*criteria)
        with self._sessions() as session:
            return [record.to_payment() for record in session.scalars(stmt)]

    def _transition(self, payment_id: str, new_status: str, now: Optional[int] = None) -> bool:
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.id == payment_id, PaymentRecord.status == STATUS_PENDING)
            .values(status=new_status, sweep_pending=True, updated_at=now if now is not None else _now())
        )
        with self._sessions() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def mark_completed(self, payment_id: str, now: Optional[int] = None) -> bool:
        """pending -> completed. Returns False if the row was not pending."""
        return self._transition(payment_id, STATUS_COMPLETED, now)

    def mark_expired(self, payment_id: str, now: Optional[int] = None) -> bool:
        return self._transition(payment_id, STATUS_EXPIRED, now)

    def record_sweep(self, payment_id: str, txid: str) -> None:
        with self._sessions() as session:
            session.execute(update(PaymentRecord).where(PaymentRecord.id == payment_id).values(txid=txid))
            session.commit()

    def clear_sweep_pending(self, payment_id: str) -> None:
        with self._sessions() as session:
            session.execute(
                update(PaymentRecord).where(PaymentRecord.id == payment_id).values(sweep_pending=False)
            )
            session.commit()

    def close(self) -> None:
        self._engine.dispose()


# ============================================================================
# COMPLETION WEBHOOK
# ============================================================================

def sats_to_coins(sats: int) -> str:
    return f"{Decimal(int(sats)) / SATS_PER_COIN:.8f}"


def coins_to_sats(amount: Any) -> int:
    """
    Convert a decimal coin amount to integer sats without float rounding.

    Raises:
        ValidationError: If the amount is not a finite decimal with at most 8 places
    """
    if isinstance(amount, bool):
        raise ValidationError("amount must be a decimal number")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError("amount must be a decimal number") from e
    if not value.is_finite():
        raise ValidationError("amount must be finite")
    sats = value * SATS_PER_COIN
    if sats != sats.to_integral_value():
        raise ValidationError("amount has more than 8 decimal places")
    return int(sats)


class CompletionWebhook:
    """POSTs an HMAC-signed `payment.completed` event."""

    def __init__(self, url: str, secret: str, timeout: float = 10.0):
        self.url = url
        self.secret = secret or ""
        self.timeout = timeout

    def build_body(self, payment: Payment) -> str:
        return json.dumps({
            "event": "payment.completed",
            "payment": {
                "id": payment.id,
                "address": payment.address,
                "amount": sats_to_coins(payment.amount_sats),
                "amount_sats": payment.amount_sats,
                "status": payment.status,
                "created_at": payment.created_at,
                "updated_at": payment.updated_at,
                "expires_at": payment.expires_at,
            },
        }, separators=(",", ":"))

    def sign(self, body: str) -> str:
        return hmac.new(self.secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()

    def send(self, payment: Payment) -> None:
        body = self.build_body(payment)
        LOG.info(f"Sending completion webhook for payment {payment.id}")
        response = requests.post(
            self.url,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/json", "X-Signature": self.sign(body)},
            timeout=self.timeout,
        )
        if not response.ok:
            raise WebhookError(f"webhook returned HTTP {response.status_code}: {response.text[:200]}")
        LOG.info(f"Success: Webhook delivered for payment {payment.id}")


# ============================================================================
# PAYMENT SERVICE
# ============================================================================

class PaymentService:
    """Operations the HTTP layer calls: create a payment, read its state."""

    def __init__(self, store: PaymentStore, vault: KeyVault, chain: ElectrumClient,
                 confirmations_required: int, payment_ttl: int = 0,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.vault = vault
        self.chain = chain
        self.confirmations_required = int(confirmations_required)
        self.payment_ttl = int(payment_ttl or 0)
        self._clock = clock

    def create_payment(self, amount_sats: int) -> Dict[str, Any]:
        """
        Issue a fresh address for a payment of `amount_sats`.

        Raises:
            ValidationError: If the amount is not a positive integer within the coin supply
            AddressCollisionError: If the store already knows the address
        """
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int):
            raise ValidationError("amount must be an integer number of sats")
        if amount_sats <= 0:
            raise ValidationError("amount must be positive")
        if amount_sats > self.vault.network.max_money_sats:
            raise ValidationError("amount exceeds the coin supply")

        address, encrypted_key = self.vault.create_address()
        now = int(self._clock())
        payment = Payment(
            id=str(uuid.uuid4()),
            address=address,
            encrypted_key=encrypted_key,
            amount_sats=amount_sats,
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + self.payment_ttl if self.payment_ttl > 0 else 0,
        )
        self.store.insert(payment)
        LOG.info(f"Payment {payment.id} created: {amount_sats} sats to {address}")
        return {
            "id": payment.id,
            "address": address,
            "amount_sats": amount_sats,
            "expires_at": payment.expires_at,
        }

    async def get_payment_view(self, payment_id: str) -> Dict[str, Any]:
        """
        Current state of a payment as seen by the chain.

        `confirmations` is the shallowest confirmed history entry (0 when
        nothing is confirmed). `received_amount` counts unconfirmed funds too.

        Raises:
            PaymentNotFound: Unknown id
            ChainUnavailableError: Electrum unreachable
        """
        payment = self.store.get(payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)

        balance = await self.chain.get_balance(payment.address)
        tip = await self.chain.get_tip_height()
        history = await self.chain.get_history(payment.address)

        depths = [confirmation_depth(tip, h.height) for h in history if h.height > 0]
        received = max(balance.confirmed, 0) + max(balance.unconfirmed, 0)
        return {
            "id": payment.id,
            "address": payment.address,
            "status": payment.status,
            "requested_amount": payment.amount_sats,
            "received_amount": received,
            "confirmations": min(depths) if depths else 0,
            "confirmations_needed": self.confirmations_required,
            "created_at": payment.created_at,
            "updated_at": payment.updated_at,
            "expires_at": payment.expires_at,
            "txid": payment.txid,
        }


# ============================================================================
# SETTLEMENT POLLER
# ============================================================================

class SettlementPoller:
    """
    Periodic driver: tracker first, then sweep, for every open payment.

    Open means pending, or settled with a sweep still outstanding. The
    outstanding marker is dropped once the address holds nothing to act on.

    Payments in one cycle run as independent tasks. A payment that is still
    in flight is skipped by any overlapping cycle, and no per-payment failure
    escapes a cycle.
    """

    def __init__(self, store: PaymentStore, tracker: ConfirmationTracker, sweeper: SweepBuilder,
                 interval: float = 10.0, cold_every: int = 360):
        self.store = store
        self.tracker = tracker
        self.sweeper = sweeper
        self.interval = float(interval)
        self.cold_every = max(1, int(cold_every))
        self.cycle = 0
        self._in_flight: set = set()

    def in_flight(self, payment_id: str) -> bool:
        return payment_id in self._in_flight

    async def process_payment(self, payment: Payment) -> Optional[str]:
        """Evaluate one payment and sweep it once it is settled (completed or expired)."""
        status = await self.tracker.evaluate(payment)
        if status not in TERMINAL_STATUSES:
            return None
        txid = await self.sweeper.sweep(payment)
        if txid:
            self.store.record_sweep(payment.id, txid)
        elif self.sweeper.sweep_finished(payment.id):
            self.store.clear_sweep_pending(payment.id)
        return txid

    async def _process_guarded(self, payment: Payment) -> None:
        if payment.id in self._in_flight:
            LOG.debug(f"Payment {payment.id} still in flight; skipped this cycle")
            return
        self._in_flight.add(payment.id)
        try:
            await self.process_payment(payment)
        except ChainUnavailableError as e:
            LOG.warning(f"Payment {payment.id}: chain unavailable, retrying next cycle ({e})")
        except BroadcastRejected as e:
            LOG.error(f"Payment {payment.id}: sweep rejected by network ({e}); retrying next cycle")
        except (DecryptionError, KeyMismatchError) as e:
            LOG.error(f"Payment {payment.id}: sweep quarantined ({e})")
        except Exception as e:
            LOG.exception(f"Payment {payment.id}: processing failed: {e}")
        finally:
            self._in_flight.discard(payment.id)

    async def run_cycle(self) -> int:
        """
        Run one poll cycle.

        Returns:
            Number of payments enumerated
        """
        self.cycle += 1
        cold = self.cycle % self.cold_every == 0
        try:
            payments = self.store.list_all() if cold else self.store.list_open()
        except Exception as e:
            LOG.error(f"Poll cycle {self.cycle}: could not list payments: {e}")
            return 0

        if payments:
            LOG.debug(f"Poll cycle {self.cycle}: {len(payments)} payment(s){' (cold)' if cold else ''}")
        await asyncio.gather(*(self._process_guarded(p) for p in payments))
        return len(payments)

    async def run_forever(self) -> None:
        LOG.info(f"Settlement poller started (interval {self.interval:.1f}s)")
        while True:
            started = time.monotonic()
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                LOG.error(f"Poll cycle error: {e}")
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))


# ============================================================================
# ENGINE ASSEMBLY
# ============================================================================

@dataclass
class SettlementEngine:
    config: Dict[str, Any]
    network: NetworkParams
    store: PaymentStore
    vault: KeyVault
    chain: ElectrumClient
    tracker: ConfirmationTracker
    sweeper: SweepBuilder
    poller: SettlementPoller
    service: PaymentService

    async def close(self) -> None:
        await self.chain.close()
        self.store.close()


def get_network(name: str) -> NetworkParams:
    try:
        return NETWORKS[str(name).lower()]
    except KeyError as e:
        raise ConfigError(f"Unknown network '{name}' (choose from {', '.join(sorted(NETWORKS))})") from e


def validate_config(config: Dict[str, Any]) -> bytes:
    """
    Check the settings every component depends on.

    Returns:
        The parsed master key

    Raises:
        ConfigError: On the first invalid setting
    """
    master_key = load_master_key(config.get("WIF_KEY"))
    network = get_network(config.get("NETWORK", "litecoin"))

    main_address = config.get("MAIN_ADDRESS")
    if not main_address:
        raise ConfigError("MAIN_ADDRESS is not set")
    try:
        decode_segwit_address(str(main_address), network.bech32_hrp)
    except ValueError as e:
        raise ConfigError(f"MAIN_ADDRESS is not a valid {network.name} segwit address: {e}") from e

    if int(config.get("CONFIRMATIONS", 0)) < 1:
        raise ConfigError("CONFIRMATIONS must be at least 1")
    if float(config.get("POLL_INTERVAL_SECONDS", 0)) <= 0:
        raise ConfigError("POLL_INTERVAL_SECONDS must be positive")
    if int(config.get("RPC_MAX_ATTEMPTS", 0)) < 1:
        raise ConfigError("RPC_MAX_ATTEMPTS must be at least 1")
    if int(config.get("PAYMENT_TTL_SECONDS", 0) or 0) < 0:
        raise ConfigError("PAYMENT_TTL_SECONDS must not be negative")
    return master_key


def build_engine(config: Optional[Dict[str, Any]] = None) -> SettlementEngine:
    """Validate configuration and wire every component around one owned Electrum handle."""
    cfg = CONFIG if config is None else config
    master_key = validate_config(cfg)
    network = get_network(cfg["NETWORK"])
    confirmations = int(cfg["CONFIRMATIONS"])

    store = PaymentStore(str(cfg["DB_URL"]))
    vault = KeyVault(master_key, network)
    chain = ElectrumClient(
        cfg["ELECTRUM_HOST"],
        int(cfg["ELECTRUM_PORT"]),
        use_ssl=bool(cfg["ELECTRUM_SSL"]),
        verify_ssl=bool(cfg["ELECTRUM_SSL_VERIFY"]),
        use_websocket=bool(cfg["ELECTRUM_WEBSOCKET"]),
        timeout=float(cfg["ELECTRUM_TIMEOUT_SECONDS"]),
        max_attempts=int(cfg["RPC_MAX_ATTEMPTS"]),
        retry_wait=float(cfg["RPC_RETRY_WAIT_SECONDS"]),
        fee_target_blocks=int(cfg["FEE_TARGET_BLOCKS"]),
        client_name=str(cfg["ELECTRUM_CLIENT_NAME"]),
        protocol_version=str(cfg["ELECTRUM_PROTOCOL_VERSION"]),
    )

    webhook = None
    if cfg.get("WEBHOOK_URL"):
        if not cfg.get("WEBHOOK_SECRET"):
            LOG.warning("WEBHOOK_URL set without WEBHOOK_SECRET; signatures use an empty key")
        webhook = CompletionWebhook(str(cfg["WEBHOOK_URL"]), str(cfg.get("WEBHOOK_SECRET") or ""))

    tracker = ConfirmationTracker(chain, store, confirmations, webhook=webhook)
    sweeper = SweepBuilder(chain, vault, str(cfg["MAIN_ADDRESS"]), confirmations)
    poller = SettlementPoller(
        store, tracker, sweeper,
        interval=float(cfg["POLL_INTERVAL_SECONDS"]),
        cold_every=int(cfg["COLD_SWEEP_EVERY_CYCLES"]),
    )
    service = PaymentService(
        store, vault, chain, confirmations, payment_ttl=int(cfg.get("PAYMENT_TTL_SECONDS") or 0)
    )
    return SettlementEngine(cfg, network, store, vault, chain, tracker, sweeper, poller, service)


async def run_node(engine: SettlementEngine, *, serve_api: bool = True) -> None:
    """
    Run the settlement poller (and the HTTP API) until cancelled.

    Args:
        engine: Assembled settlement engine
        serve_api: Also serve the HTTP API with uvicorn
    """
    cfg = engine.config
    LOG.info("=" * 60)
    LOG.info("LTCPAY NODE STARTING")
    LOG.info("=" * 60)
    LOG.info(f"Version: {cfg['VERSION']}")
    LOG.info(f"Network: {engine.network.name}")
    LOG.info(f"Electrum: {engine.chain.url}")
    LOG.info(f"Sweep destination: {engine.sweeper.destination_address}")
    LOG.info(f"Confirmations required: {engine.tracker.confirmations_required}")
    LOG.info(f"Poll interval: {engine.poller.interval:.1f}s")
    LOG.info("=" * 60)

    try:
        await engine.chain.connect()
    except (ChainUnavailableError, ElectrumError) as e:
        LOG.warning(f"Electrum server not reachable yet ({e}); the poller keeps retrying")

    tasks = [asyncio.create_task(engine.poller.run_forever(), name="ltcpay-poller")]
    if serve_api:
        from ltcpay_api import create_app

        server = uvicorn.Server(uvicorn.Config(
            create_app(engine),
            host=str(cfg["API_BIND"]),
            port=int(cfg["API_PORT"]),
            log_level=str(cfg["LOG_LEVEL"]).lower(),
        ))
        tasks.append(asyncio.create_task(server.serve(), name="ltcpay-api"))
        LOG.info(f"HTTP API: http://{cfg['API_BIND']}:{cfg['API_PORT']}")

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None:
                raise task.exception()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await engine.close()
        LOG.info("Shutdown complete.")


# ============================================================================
# CLI INTERFACE
# ============================================================================

def print_banner():
    width = 63
    lines = [
        "",
        "ltcpay node  -  single-use addresses, confirmed sweeps",
        f"Version {CONFIG['VERSION']}",
        "",
    ]
    print("+" + "-" * width + "+")
    for line in lines:
        print("|   " + line.ljust(width - 3) + "|")
    print("+" + "-" * width + "+")


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"expected a boolean, got {raw!r}")


def _sqlite_url(path: str) -> str:
    return f"sqlite:///{path}"


# (CONFIG key, environment variable, parser). Later entries win.
_ENV_OVERRIDES: Final[Tuple[Tuple[str, str, Callable[[str], Any]], ...]] = (
    ("NETWORK", "NETWORK", str),
    ("ELECTRUM_HOST", "ELECTRUM_HOST", str),
    ("ELECTRUM_PORT", "ELECTRUM_PORT", int),
    ("ELECTRUM_SSL", "ELECTRUM_SSL", _parse_bool),
    ("ELECTRUM_SSL_VERIFY", "ELECTRUM_SSL_VERIFY", _parse_bool),
    ("ELECTRUM_WEBSOCKET", "ELECTRUM_WEBSOCKET", _parse_bool),
    ("ELECTRUM_TIMEOUT_SECONDS", "ELECTRUM_TIMEOUT_SECONDS", float),
    ("RPC_MAX_ATTEMPTS", "RPC_MAX_ATTEMPTS", int),
    ("RPC_RETRY_WAIT_SECONDS", "RPC_RETRY_WAIT_SECONDS", float),
    ("FEE_TARGET_BLOCKS", "FEE_TARGET_BLOCKS", int),
    ("MAIN_ADDRESS", "MAIN_ADDRESS", str),
    ("CONFIRMATIONS", "CONFIRMATIONS_REQUIRED", int),
    ("CONFIRMATIONS", "CONFIRMATIONS", int),
    ("WIF_KEY", "WIF_KEY", str),
    ("POLL_INTERVAL_SECONDS", "POLL_INTERVAL_SECONDS", float),
    ("COLD_SWEEP_EVERY_CYCLES", "COLD_SWEEP_EVERY_CYCLES", int),
    ("PAYMENT_TTL_SECONDS", "PAYMENT_TTL_SECONDS", int),
    ("DB_URL", "DB_FILE", _sqlite_url),
    ("DB_URL", "DB_URL", str),
    ("WEBHOOK_URL", "WEBHOOK_URL", str),
    ("WEBHOOK_SECRET", "WEBHOOK_SECRET", str),
    ("API_BIND", "API_BIND", str),
    ("API_PORT", "PORT", int),
    ("LOG_LEVEL", "LOG_LEVEL", str),
)

# (argparse dest, CONFIG key)
_CLI_OVERRIDES: Final[Tuple[Tuple[str, str], ...]] = (
    ("network", "NETWORK"),
    ("electrum_host", "ELECTRUM_HOST"),
    ("electrum_port", "ELECTRUM_PORT"),
    ("electrum_ssl", "ELECTRUM_SSL"),
    ("main_address", "MAIN_ADDRESS"),
    ("confirmations", "CONFIRMATIONS"),
    ("poll_interval", "POLL_INTERVAL_SECONDS"),
    ("db_url", "DB_URL"),
    ("bind", "API_BIND"),
    ("port", "API_PORT"),
    ("log_level", "LOG_LEVEL"),
)


def _apply_runtime_overrides(args: argparse.Namespace, config: Optional[Dict[str, Any]] = None,
                             environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Apply environment variables, then CLI flags, on top of the CONFIG defaults."""
    cfg = CONFIG if config is None else config
    env = os.environ if environ is None else environ

    for key, env_name, parse in _ENV_OVERRIDES:
        raw = env.get(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            cfg[key] = parse(raw.strip())
        except ValueError as e:
            raise ConfigError(f"{env_name}={raw!r} is invalid: {e}") from e

    for dest, key in _CLI_OVERRIDES:
        value = getattr(args, dest, None)
        if value is not None:
            cfg[key] = value
    return cfg


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ltcpay-node", add_help=True)
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--generate-master-key", action="store_true",
                        help="Print a fresh 32-byte master key (hex) for WIF_KEY and exit")
    parser.add_argument("--network", type=str, default=None, help=f"One of {', '.join(sorted(NETWORKS))} (or set NETWORK)")
    parser.add_argument("--electrum-host", type=str, default=None, help="Electrum server host (or set ELECTRUM_HOST)")
    parser.add_argument("--electrum-port", type=int, default=None, help="Electrum server port (or set ELECTRUM_PORT)")
    parser.add_argument("--electrum-ssl", action="store_true", default=None, help="Use TLS (or set ELECTRUM_SSL=true)")
    parser.add_argument("--main-address", type=str, default=None, help="Custodial sweep address (or set MAIN_ADDRESS)")
    parser.add_argument("--confirmations", type=int, default=None, help="Required confirmations (or set CONFIRMATIONS)")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between poll cycles")
    parser.add_argument("--db-url", type=str, default=None, help="SQLAlchemy URL (or set DB_URL / DB_FILE)")
    parser.add_argument("--bind", type=str, default=None, help="HTTP API bind host (or set API_BIND)")
    parser.add_argument("--port", type=int, default=None, help="HTTP API port (or set PORT)")
    parser.add_argument("--no-api", action="store_true", help="Run the settlement poller only")
    parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ERROR")
    return parser.parse_args(argv)


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), None)
    if not isinstance(level, int):
        LOG.warning(f"Unknown LOG_LEVEL {level_name!r}; using INFO")
        level = logging.INFO
    logging.getLogger().setLevel(level)


def main(argv: Optional[List[str]] = None):
    """
    Main entry point.

    Loads `.env`, applies overrides, validates configuration (fatal on error)
    and runs the node until interrupted.
    """
    args = _parse_args(argv)

    if args.version:
        print(CONFIG["VERSION"])
        return
    if args.generate_master_key:
        print(AESGCM.generate_key(bit_length=256).hex())
        return

    load_dotenv()
    try:
        _apply_runtime_overrides(args)
        _configure_logging(CONFIG["LOG_LEVEL"])
        engine = build_engine()
    except ConfigError as e:
        LOG.error(f"Fatal configuration error: {e}")
        sys.exit(2)

    print_banner()
    try:
        asyncio.run(run_node(engine, serve_api=not args.no_api))
    except KeyboardInterrupt:
        print("\n\nltcpay node stopped")
    except Exception as e:
        LOG.error(f"Fatal error: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
