import hashlib

import pytest

from ltcpay_node import (
    address_to_script,
    address_to_scripthash,
    decode_segwit_address,
    encode_segwit_address,
    hash160,
    p2wpkh_address,
    private_key_to_public_key,
)


def test_bip173_p2wpkh_vector():
    script = address_to_script("BC1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T4")
    assert script.hex() == "0014751e76e8199196d454941c45d1b3a323f1433bd6"


def test_bip173_p2wsh_vector():
    script = address_to_script("tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7")
    assert script.hex() == "00201863143c14c5166804bd19203356da136c985678cd4d27a1b8c6329604903262"


def test_private_key_one_derives_known_address():
    pubkey = private_key_to_public_key((1).to_bytes(32, "big"))

    assert pubkey.hex() == "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
    assert hash160(pubkey).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"
    assert p2wpkh_address(pubkey, "bc") == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


def test_encode_decode_litecoin_address():
    program = bytes.fromhex("751e76e8199196d454941c45d1b3a323f1433bd6")
    address = encode_segwit_address("ltc", 0, program)

    assert address.startswith("ltc1q")
    assert decode_segwit_address(address, "ltc") == ("ltc", 0, program)


def test_scripthash_is_reversed_sha256_of_script():
    address = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
    script = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")

    scripthash = address_to_scripthash(address)
    assert scripthash == hashlib.sha256(script).digest()[::-1].hex()
    assert len(scripthash) == 64


def test_decode_rejects_other_network():
    with pytest.raises(ValueError):
        decode_segwit_address("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", "ltc")


@pytest.mark.parametrize("address", [
    "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5",  # bad checksum
    "bc1QW508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4",  # mixed case
    "bc1zw508d6qejxtdg4y5r3zarvaryvqyzf3du",  # v0 checksum on v2 program
    "bc1gmk9yu",  # empty data
])
def test_decode_rejects_invalid_addresses(address):
    with pytest.raises(ValueError):
        decode_segwit_address(address)
