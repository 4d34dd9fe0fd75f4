import pytest

from ahmiyat.models import (
    AhmiyatBlock,
    InvalidBlockError,
    InvalidMemoryError,
    InvalidTransactionError,
    MemoryFragment,
    MiningError,
    ShardManager,
    Transaction,
)
from ahmiyat.utils import sha256_hex


@pytest.fixture(autouse=True)
def _in_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def memory(tmp_path):
    return MemoryFragment.create(
        "text", str(tmp_path / "m.txt"), "Test memory", "owner", 0, uploader=lambda path: "QmFake"
    )


def test_transaction_validation():
    tx = Transaction("sender", "receiver", 10.0)
    assert tx.validate() is True
    with pytest.raises(InvalidTransactionError):
        Transaction("", "receiver", 10.0)


@pytest.mark.parametrize(
    "args",
    [
        ("alice", "alice", 1.0),
        ("alice", "bob", -1.0),
        ("alice", "bob", 21000001.0),
        ("alice", "bob", 1.0, 2.0),
        ("alice", "bob", 1.0, 0.001, ""),
    ],
)
def test_transaction_rejects_bad_fields(args):
    with pytest.raises(InvalidTransactionError):
        Transaction(*args)


def test_transaction_zero_timestamp_invalid():
    tx = Transaction("a", "b", 1.0)
    tx.timestamp = 0
    assert tx.validate() is False


def test_transaction_payload_and_digest():
    tx = Transaction("a", "b", 10.0, timestamp=5)
    assert tx.payload() == "ab10.0000000.00100005"
    assert tx.digest() == sha256_hex(tx.payload())


def test_digest_depends_on_script():
    plain = Transaction("a", "b", 10.0, timestamp=5)
    scripted = Transaction("a", "b", 10.0, script="BALANCE_CHECK=1", timestamp=5)
    assert plain.digest() != scripted.digest()
    assert "BALANCE_CHECK=1" in scripted.payload()


def test_execute_script():
    tx = Transaction("a", "b", 1.0, script="BALANCE_CHECK=10")
    assert tx.execute_script({"a": 20.0}) is True
    assert tx.execute_script({"a": 5.0}) is False
    assert tx.execute_script({}) is False
    assert Transaction("a", "b", 1.0).execute_script({}) is True
    assert Transaction("a", "b", 1.0, script="OTHER").execute_script({}) is True
    assert Transaction("a", "b", 1.0, script="BALANCE_CHECK=abc").execute_script({"a": 1}) is False


def test_memory_fragment(tmp_path, memory):
    assert memory.validate() is True
    assert memory.ipfs_hash == "QmFake"
    assert (tmp_path / "m.txt").read_text() == "Memory Data: Test memory"
    with pytest.raises(InvalidMemoryError):
        MemoryFragment("", str(tmp_path / "m.txt"), "Test memory", "owner", 0)
    memory.lock_time = -1
    assert memory.validate() is False


def test_memory_save_failure_raises(tmp_path):
    fragment = MemoryFragment("text", str(tmp_path / "missing" / "m.txt"), "d", "owner")
    with pytest.raises(OSError):
        fragment.save_to_file()


def test_block_create_and_validate(memory):
    tx = Transaction("alice", "bob", 1.0)
    block = AhmiyatBlock.create(0, [tx], memory, "0", 1, 0.0, "3")
    assert block.validate() is True
    assert block.hash.startswith("0")
    assert block.calculate_hash() == block.hash
    assert 0 <= int(block.memory_proof) <= 255
    block.previous_hash = "tampered"
    assert block.validate() is False


def test_block_zero_difficulty_always_valid(memory):
    block = AhmiyatBlock.create(2, [], memory, "abc", 0, 5.0, "1")
    assert block.is_memory_proof_valid(0) is True
    assert block.validate() is True


def test_block_serialize(memory):
    tx = Transaction("alice", "bob", 1.0)
    block = AhmiyatBlock.create(0, [tx], memory, "0", 0, 0.0, "3")
    parts = block.serialize().split("|")
    assert len(parts) == 8
    assert parts[0] == "0"
    assert parts[1] == str(block.timestamp)
    assert parts[2].startswith("alice,bob,1,") and parts[2].endswith(";")
    assert parts[3] == "text,QmFake,Test memory,owner,0"
    assert parts[4:] == ["0", block.memory_proof, "0", "3"]


def test_block_with_invalid_tx_rejected(memory):
    tx = Transaction("alice", "bob", 1.0)
    tx.receiver = "alice"
    with pytest.raises(InvalidBlockError):
        AhmiyatBlock.create(0, [tx], memory, "0", 0, 0.0, "0")


def test_mine_with_insufficient_stake(memory):
    block = AhmiyatBlock(0, [], memory, "0", 0, 10.0, "0")
    with pytest.raises(MiningError):
        block.mine(5.0)


def test_shard_manager_assignment():
    manager = ShardManager()
    tx = Transaction("sender", "receiver", 10.0)
    shard_id = manager.assign_shard(tx, 16)
    assert 0 <= int(shard_id) < 16
    assert manager.assign_shard(tx, 16) == shard_id
    manager.update_load(shard_id, 1)
    assert manager.loads[shard_id] == 1


def test_shard_manager_reroutes_overloaded_shard():
    manager = ShardManager()
    tx = Transaction("sender", "receiver", 10.0)
    original = manager.assign_shard(tx, 16)
    manager.update_load(original, 1001)
    rerouted = manager.assign_shard(tx, 16)
    assert rerouted != original
    assert manager.loads[rerouted] < manager.loads[original]