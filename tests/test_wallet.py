from ahmiyat.utils import sha256_hex
from ahmiyat.wallet import Wallet


def test_public_key_is_digest_of_private_key():
    wallet = Wallet.generate()
    assert len(wallet.private_key) == 32
    assert wallet.public_key == sha256_hex(wallet.private_key)


def test_public_key_is_lowercase_hex():
    wallet = Wallet.generate()
    assert len(wallet.public_key) == 64
    assert set(wallet.public_key) <= set("0123456789abcdef")


def test_wallets_are_distinct():
    keys = {Wallet.generate().public_key for _ in range(10)}
    assert len(keys) == 10