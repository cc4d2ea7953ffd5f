import hashlib
import struct

import pytest

from ltcpay_node import (
    NETWORKS,
    Balance,
    ChainUnavailableError,
    HistoryEntry,
    KeyVault,
    PaymentService,
    PaymentStore,
    Utxo,
    p2wpkh_address,
    private_key_to_public_key,
)

MASTER_KEY = bytes.fromhex("11" * 32)


class FakeChain:
    """In-memory stand-in for ElectrumClient with the same async surface."""

    def __init__(self, tip: int = 1000):
        self.tip = tip
        self.fee_rate = 1
        self.balances = {}
        self.utxos = {}
        self.history = {}
        self.unavailable = set()
        self.broadcast_error = None
        self.broadcasts = []
        self.calls = []
        # Electrum hides outputs spent in the mempool from listunspent
        self.hide_spent = True
        self.sweeps = {}

    def fund(self, address, value, height, tx_hash=None, tx_pos=0):
        """Add an unspent output and keep balance/history consistent with it."""
        tx_hash = tx_hash or hashlib.sha256(f"{address}:{value}:{height}:{tx_pos}".encode()).hexdigest()
        self.utxos.setdefault(address, []).append(Utxo(tx_hash, tx_pos, value, height))
        self.history.setdefault(address, []).append(HistoryEntry(tx_hash, height))
        current = self.balances.get(address, Balance(0, 0))
        if height > 0:
            self.balances[address] = Balance(current.confirmed + value, current.unconfirmed)
        else:
            self.balances[address] = Balance(current.confirmed, current.unconfirmed + value)
        return tx_hash

    def _check(self, method, address=None):
        self.calls.append((method, address))
        if address in self.unavailable or "*" in self.unavailable:
            raise ChainUnavailableError(f"{method} failed after 3 attempts")

    async def get_balance(self, address):
        self._check("get_balance", address)
        return self.balances.get(address, Balance(0, 0))

    async def get_history(self, address):
        self._check("get_history", address)
        return list(self.history.get(address, []))

    async def list_unspent(self, address):
        self._check("list_unspent", address)
        return list(self.utxos.get(address, []))

    async def get_tip_height(self):
        self._check("get_tip_height")
        return self.tip

    async def estimate_fee_rate(self):
        self._check("estimate_fee_rate")
        return self.fee_rate

    async def broadcast(self, raw_tx_hex):
        self._check("broadcast")
        if self.broadcast_error is not None:
            raise self.broadcast_error
        self.broadcasts.append(raw_tx_hex)
        txid = hashlib.sha256(bytes.fromhex(raw_tx_hex)).hexdigest()
        self._accept(txid, _spent_outpoints(bytes.fromhex(raw_tx_hex)))
        return txid

    def _accept(self, txid, outpoints):
        for address, utxos in self.utxos.items():
            taken = [u for u in utxos if u.outpoint in outpoints]
            if not taken:
                continue
            self.sweeps[txid] = (address, taken)
            self.history.setdefault(address, []).append(HistoryEntry(txid, 0))
            if self.hide_spent:
                self.utxos[address] = [u for u in utxos if u.outpoint not in outpoints]
            return

    def evict(self, txid):
        """Drop a broadcast sweep from the mempool, making its inputs unspent again."""
        address, taken = self.sweeps.pop(txid)
        self.history[address] = [h for h in self.history[address] if h.tx_hash != txid]
        remaining = self.utxos.setdefault(address, [])
        remaining.extend([u for u in taken if u not in remaining])

    async def close(self):
        pass


def _spent_outpoints(raw):
    """Outpoints consumed by a serialized segwit transaction (single-byte counts only)."""
    pos = 6 if raw[4:6] == b"\x00\x01" else 4
    count = raw[pos]
    pos += 1
    outpoints = set()
    for _ in range(count):
        txid = raw[pos:pos + 32][::-1].hex()
        vout = struct.unpack("<I", raw[pos + 32:pos + 36])[0]
        outpoints.add((txid, vout))
        pos += 36
        pos += 1 + raw[pos] + 4
    return outpoints


class RecordingWebhook:
    def __init__(self):
        self.sent = []

    def send(self, payment):
        self.sent.append(payment)


@pytest.fixture
def network():
    return NETWORKS["litecoin"]


@pytest.fixture
def vault(network):
    return KeyVault(MASTER_KEY, network)


@pytest.fixture
def store():
    s = PaymentStore("sqlite://")
    yield s
    s.close()


@pytest.fixture
def chain():
    return FakeChain(tip=1000)


@pytest.fixture
def main_address(network):
    return p2wpkh_address(private_key_to_public_key((2).to_bytes(32, "big")), network.bech32_hrp)


@pytest.fixture
def service(store, vault, chain):
    return PaymentService(store, vault, chain, confirmations_required=2)


@pytest.fixture
def webhook():
    return RecordingWebhook()
