"""Transactions, memory fragments, blocks and shard assignment."""

from __future__ import annotations

import hashlib
import random
import re
import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ahmiyat.utils import log, sha256_hex, upload_to_ipfs

MAX_SUPPLY = 21000000.0
_MAX_PROOF = 255
_OVERLOAD_THRESHOLD = 1000
_LEADING_FLOAT = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


class InvalidTransactionError(ValueError):
    """A transaction failed validation."""


class InvalidMemoryError(ValueError):
    """A memory fragment failed validation."""


class InvalidBlockError(ValueError):
    """A newly created block failed validation."""


class MiningError(RuntimeError):
    """No proof satisfying the block's difficulty could be found."""


def _fixed(value: float) -> str:
    """Six-decimal fixed notation, as used in transaction payloads."""
    return f"{value:f}"


def _stream(value: float) -> str:
    """Shortest general notation with six significant digits."""
    return f"{value:g}"


@dataclass
class Transaction:
    """A transfer of coins between two addresses in a shard."""

    sender: str
    receiver: str
    amount: float
    fee: float = 0.001
    shard_id: str = "0"
    script: str = ""
    signature: str = ""
    timestamp: int = field(default_factory=time.time_ns)

    def __post_init__(self) -> None:
        if not self.validate():
            raise InvalidTransactionError("Invalid transaction")

    def validate(self) -> bool:
        """Check the parties, amounts, timestamp and shard."""
        if not self.sender or not self.receiver or self.sender == self.receiver:
            return False
        if self.amount < 0 or self.fee < 0 or self.amount > MAX_SUPPLY or self.fee > self.amount:
            return False
        return self.timestamp != 0 and bool(self.shard_id)

    def payload(self) -> str:
        """The text that is hashed and signed for this transaction."""
        return (
            f"{self.sender}{self.receiver}{_fixed(self.amount)}{_fixed(self.fee)}"
            f"{self.script}{self.shard_id}{self.timestamp}"
        )

    def digest(self) -> str:
        """Hex SHA-256 of the payload."""
        return sha256_hex(self.payload())

    def execute_script(self, balances: Mapping[str, float]) -> bool:
        """Run the attached script against the given balances."""
        if not self.script:
            return True
        if "BALANCE_CHECK" not in self.script:
            return True
        match = _LEADING_FLOAT.match(self.script[self.script.find("=") + 1 :])
        if match is None:
            return False
        required = float(match.group(1))
        return self.sender in balances and balances[self.sender] >= required


@dataclass
class MemoryFragment:
    """A file attached to a block, stored locally and pinned to IPFS."""

    kind: str
    file_path: str
    description: str
    owner: str
    lock_time: int = 0
    ipfs_hash: str = ""

    def __post_init__(self) -> None:
        if not self.validate():
            raise InvalidMemoryError("Invalid memory fragment")

    def validate(self) -> bool:
        """Check that the fragment names a type, a file and an owner."""
        return bool(self.kind) and bool(self.file_path) and bool(self.owner) and self.lock_time >= 0

    def save_to_file(self) -> None:
        """Write the fragment's description to its file."""
        try:
            Path(self.file_path).write_bytes(f"Memory Data: {self.description}".encode("utf-8"))
        except OSError:
            log(f"Error saving memory file: {self.file_path}")
            raise

    @classmethod
    def create(
        cls,
        kind: str,
        file_path: str,
        description: str,
        owner: str,
        lock_time: int = 0,
        uploader: Callable[[str], str] | None = None,
    ) -> "MemoryFragment":
        """Validate, save and upload a new fragment."""
        fragment = cls(kind, file_path, description, owner, lock_time)
        fragment.save_to_file()
        fragment.ipfs_hash = (uploader or upload_to_ipfs)(file_path)
        return fragment


@dataclass
class AhmiyatBlock:
    """A block of transactions in one shard, carrying a memory fragment."""

    index: int
    transactions: list[Transaction]
    memory: MemoryFragment
    previous_hash: str
    difficulty: int
    stake_weight: float
    shard_id: str
    timestamp: int = field(default_factory=time.time_ns)
    memory_proof: str = ""
    hash: str = ""

    def calculate_hash(self) -> str:
        """Hash the block's header, transactions and proof."""
        parts = [str(self.index), str(self.timestamp)]
        parts.extend(tx.digest() for tx in self.transactions)
        parts.extend(
            [
                self.memory.ipfs_hash,
                self.previous_hash,
                self.memory_proof,
                _stream(self.stake_weight),
                self.shard_id,
            ]
        )
        return sha256_hex("".join(parts))

    def is_memory_proof_valid(self, difficulty: int) -> bool:
        """Whether the current hash starts with ``difficulty`` zeros."""
        return self.hash[:difficulty] == "0" * difficulty

    def validate(self) -> bool:
        """Check fields, contents, hash and proof of work."""
        if self.index < 0 or self.difficulty < 0 or self.stake_weight < 0:
            return False
        if not all(tx.validate() for tx in self.transactions):
            return False
        if not self.memory.validate():
            return False
        return self.calculate_hash() == self.hash and self.is_memory_proof_valid(self.difficulty)

    def mine(self, miner_stake: float) -> str:
        """Search the proof space for a hash meeting the difficulty.

        Proofs are drawn from 0..255; every candidate is tried once in random
        order. Raises MiningError when none works or the miner's stake is
        below the block's stake weight.
        """
        if miner_stake < self.stake_weight and self.stake_weight > 0:
            raise MiningError("Mining failed: too many attempts")
        candidates = list(range(_MAX_PROOF + 1))
        random.shuffle(candidates)
        for candidate in candidates:
            self.memory_proof = str(candidate)
            self.hash = self.calculate_hash()
            if self.is_memory_proof_valid(self.difficulty):
                log(f"Block mined in shard {self.shard_id} - Hash: {self.hash[:16]}")
                return self.hash
        raise MiningError("Mining failed: too many attempts")

    def serialize(self) -> str:
        """Pipe-delimited wire form of the block."""
        txs = "".join(
            f"{tx.sender},{tx.receiver},{_stream(tx.amount)},{_stream(tx.fee)},"
            f"{tx.signature},{tx.script},{tx.shard_id};"
            for tx in self.transactions
        )
        memory = self.memory
        memory_text = (
            f"{memory.kind},{memory.ipfs_hash},{memory.description},"
            f"{memory.owner},{memory.lock_time}"
        )
        return "|".join(
            [
                str(self.index),
                str(self.timestamp),
                txs,
                memory_text,
                self.previous_hash,
                self.memory_proof,
                _stream(self.stake_weight),
                self.shard_id,
            ]
        )

    @classmethod
    def create(
        cls,
        index: int,
        transactions: Iterable[Transaction],
        memory: MemoryFragment,
        previous_hash: str,
        difficulty: int,
        stake_weight: float,
        shard_id: str,
    ) -> "AhmiyatBlock":
        """Build, mine and validate a new block."""
        block = cls(index, list(transactions), memory, previous_hash, difficulty, stake_weight, shard_id)
        block.mine(stake_weight)
        if not block.validate():
            raise InvalidBlockError("Invalid block created")
        return block


class ShardManager:
    """Maps transactions to shards and tracks per-shard load."""

    def __init__(self) -> None:
        self.loads: defaultdict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def assign_shard(self, tx: Transaction, max_shards: int) -> str:
        """Pick a shard from the sender's hash, avoiding overloaded shards."""
        with self._lock:
            first_byte = hashlib.sha256(tx.sender.encode("utf-8")).digest()[0]
            shard_id = str(first_byte % max_shards)
            if self.loads[shard_id] > _OVERLOAD_THRESHOLD:
                for alternative in map(str, range(max_shards)):
                    if self.loads[alternative] < self.loads[shard_id]:
                        shard_id = alternative
                        break
            return shard_id

    def update_load(self, shard_id: str, tx_count: int) -> None:
        """Add ``tx_count`` transactions to a shard's load."""
        with self._lock:
            self.loads[shard_id] += tx_count