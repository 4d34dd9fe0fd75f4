"""The sharded chain: block storage, mining rewards, staking, governance and networking."""

from __future__ import annotations

import copy
import ipaddress
import socket
import sqlite3
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from os import PathLike
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from ahmiyat.dht import DHT, Node
from ahmiyat.models import (
    MAX_SUPPLY,
    AhmiyatBlock,
    InvalidBlockError,
    MemoryFragment,
    MiningError,
    ShardManager,
    Transaction,
)
from ahmiyat.utils import generate_zk_proof, log, upload_to_ipfs
from ahmiyat.wallet import Wallet

MAX_SHARDS = 16
INITIAL_DIFFICULTY = 4
TARGET_BLOCK_TIME = 60000
HALVING_INTERVAL = 210000

_READ_SIZE = 4096
_MAX_BROADCAST_PEERS = 10


class BlockStore:
    """Persistent key/value store of serialized blocks, iterated in key order."""

    def __init__(self, path: str | PathLike[str]) -> None:
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS blocks (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )

    def put(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any earlier value."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO blocks (key, value) VALUES (?, ?)", (key, value)
                )
        except sqlite3.Error as exc:
            log(f"Error saving block to DB: {exc}")
            raise

    def get(self, key: str) -> str | None:
        """Return the value stored under ``key``, or None."""
        with self._lock:
            row = self._conn.execute("SELECT value FROM blocks WHERE key = ?", (key,)).fetchone()
        return None if row is None else row[0]

    def keys(self) -> list[str]:
        """All stored keys in ascending order."""
        with self._lock:
            rows = self._conn.execute("SELECT key FROM blocks ORDER BY key").fetchall()
        return [key for (key,) in rows]

    def close(self) -> None:
        """Close the underlying database."""
        with self._lock:
            self._conn.close()


class AhmiyatChain:
    """A node's view of every shard, its balances, stakes and peers."""

    COIN_NAME = "Ahmiyat Coin"
    COIN_SYMBOL = "AHM"

    def __init__(
        self,
        db_path: str | PathLike[str] = "ahmiyat_db",
        memory_dir: str | PathLike[str] = "memories",
        *,
        initial_difficulty: int = INITIAL_DIFFICULTY,
        uploader: Callable[[str], str] | None = None,
        broadcast_timeout: float = 5.0,
    ) -> None:
        self._key = ec.generate_private_key(ec.SECP256K1())
        self._lock = threading.RLock()
        self._uploader = uploader or upload_to_ipfs
        self._broadcast_timeout = broadcast_timeout
        self.memory_dir = Path(memory_dir)
        self.memory_dir.mkdir(parents=True, exist_ok=True)

        self.shards: defaultdict[str, list[AhmiyatBlock]] = defaultdict(list)
        self.balances: defaultdict[str, defaultdict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self.stakes: defaultdict[str, defaultdict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self.difficulties: defaultdict[str, int] = defaultdict(int)
        self.nodes: list[Node] = []
        self.dht = DHT()
        self.processed_txs: set[str] = set()
        self.pending_txs: deque[Transaction] = deque()
        self.shard_manager = ShardManager()
        self.proposals: dict[str, tuple[str, int]] = {}

        self.total_mined = 0.0
        self.block_reward = 50.0
        self.staking_reward = 0.1
        self.halving_interval = HALVING_INTERVAL

        self._store = BlockStore(db_path)
        try:
            self._create_genesis(initial_difficulty)
        except BaseException:
            self._store.close()
            raise

    def _create_genesis(self, difficulty: int) -> None:
        self.difficulties["0"] = difficulty
        genesis_tx = Transaction("system", "genesis", 100.0)
        genesis_tx.signature = self.sign_transaction(genesis_tx)
        memory = MemoryFragment.create(
            "text",
            self._memory_path("genesis.txt"),
            "The beginning of Ahmiyat",
            "system",
            0,
            self._uploader,
        )
        block = AhmiyatBlock.create(0, [genesis_tx], memory, "0", difficulty, 0.0, "0")
        self.shards["0"].append(block)
        self._store.put(block.hash, block.serialize())
        self.balances["0"]["genesis"] = 100.0
        self.stakes["0"]["genesis"] = 0.0
        self.total_mined += 100.0

    def _memory_path(self, name: str) -> str:
        return str(self.memory_dir / name)

    def close(self) -> None:
        """Release the block store."""
        self._store.close()

    def __enter__(self) -> "AhmiyatChain":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def sign_transaction(self, tx: Transaction) -> str:
        """ECDSA signature over the transaction payload, hex encoded DER."""
        return self._key.sign(tx.payload().encode("utf-8"), ec.ECDSA(hashes.SHA256())).hex()

    def verify_signature(self, tx: Transaction, signature: str) -> bool:
        """Whether ``signature`` is this node's signature of ``tx``."""
        try:
            self._key.public_key().verify(
                bytes.fromhex(signature), tx.payload().encode("utf-8"), ec.ECDSA(hashes.SHA256())
            )
        except (InvalidSignature, ValueError):
            return False
        return True

    def load_chain_from_db(self) -> list[str]:
        """Return and log the keys of every stored block."""
        try:
            keys = self._store.keys()
        except sqlite3.Error as exc:
            log(f"DB read error: {exc}")
            return []
        for key in keys:
            log(f"Loaded block from DB: {key}")
        return keys

    def sync_chain(self, block_data: str) -> bool:
        """Inspect received block data; return True when it names an unknown block."""
        fields = block_data.split("|")
        shard_id = fields[-1]
        block_hash = fields[-2] if len(fields) > 1 else fields[0]
        with self._lock:
            known = any(block.hash == block_hash for block in self.shards[shard_id])
        if known:
            return False
        log(f"Synced new block in shard {shard_id}: {block_hash}")
        return True

    def _update_reward(self, shard_id: str) -> None:
        with self._lock:
            count = len(self.shards[shard_id])
            if count > 0 and count % self.halving_interval == 0:
                self.block_reward /= 2
                self.staking_reward *= 1.05
                log(f"Shard {shard_id}: Block reward halved to: {self.block_reward:f}")

    def validate_block(self, block: AhmiyatBlock) -> bool:
        """Check linkage to the shard's tip, the block itself and its transactions."""
        with self._lock:
            chain = self.shards[block.shard_id]
            if not chain and block.previous_hash != "0":
                return False
            if chain and block.previous_hash != chain[-1].hash:
                return False
            if not block.validate():
                return False
            return all(
                tx.signature not in self.processed_txs and tx.validate()
                for tx in block.transactions
            )

    def _compress_state(self, shard_id: str) -> str:
        with self._lock:
            state = "".join(
                f"{address}{balance:g}" for address, balance in self.balances[shard_id].items()
            )
        proof = generate_zk_proof(state)
        log(f"Shard {shard_id} state compressed with ZKP: {proof[:16]}")
        return proof

    def assign_shard(self, tx: Transaction) -> str:
        """The shard a transaction belongs to."""
        return self.shard_manager.assign_shard(tx, MAX_SHARDS)

    def process_pending_txs(self) -> None:
        """Mine a block for every queued transaction."""
        with self._lock:
            batch = list(self.pending_txs)
            self.pending_txs.clear()
        for tx in batch:
            try:
                memory = MemoryFragment.create(
                    "text",
                    self._memory_path(f"pending_{tx.digest()}.txt"),
                    "Pending tx",
                    tx.sender,
                    0,
                    self._uploader,
                )
                stake = self.stakes.get(tx.shard_id, {}).get(tx.sender, 0.0)
                self.add_block([tx], memory, tx.sender, stake)
            except Exception as exc:
                log(f"Failed to process tx {tx.digest()}: {exc}")

    def add_block(
        self,
        txs: Iterable[Transaction],
        memory: MemoryFragment,
        miner_id: str,
        stake: float,
    ) -> list[AhmiyatBlock]:
        """Sign, shard and mine the transactions; return the blocks accepted."""
        if self.total_mined + self.block_reward > MAX_SUPPLY:
            log("Max supply reached, no more mining rewards")
            return []

        by_shard: dict[str, list[Transaction]] = {}
        for original in txs:
            if not original.validate():
                continue
            tx = copy.copy(original)
            tx.shard_id = self.assign_shard(tx)
            if tx.signature in self.processed_txs:
                continue
            tx.signature = self.sign_transaction(tx)
            by_shard.setdefault(tx.shard_id, []).append(tx)
            self.shard_manager.update_load(tx.shard_id, 1)

        added = []
        for shard_id, shard_txs in by_shard.items():
            block = self._commit_block(shard_id, shard_txs, memory, miner_id, stake)
            if block is not None:
                added.append(block)
        return added

    def _commit_block(
        self,
        shard_id: str,
        shard_txs: list[Transaction],
        memory: MemoryFragment,
        miner_id: str,
        stake: float,
    ) -> AhmiyatBlock | None:
        with self._lock:
            chain = self.shards[shard_id]
            index = len(chain)
            previous = chain[-1].hash if chain else "0"
            difficulty = self.difficulties[shard_id]
        try:
            block = AhmiyatBlock.create(
                index, shard_txs, memory, previous, difficulty, stake, shard_id
            )
        except (MiningError, InvalidBlockError) as exc:
            log(f"Block creation failed in shard {shard_id}: {exc}")
            return None
        if not self.validate_block(block):
            log(f"Invalid block rejected in shard {shard_id}")
            return None

        with self._lock:
            self.shards[shard_id].append(block)
            self.processed_txs.update(tx.signature for tx in shard_txs)
            self._store.put(block.hash, block.serialize())

            balances = self.balances[shard_id]
            total_fee = 0.0
            for tx in shard_txs:
                if not tx.execute_script(balances):
                    continue
                if balances[tx.sender] < tx.amount + tx.fee:
                    log(f"Insufficient balance for {tx.sender} in shard {shard_id}")
                    continue
                balances[tx.sender] -= tx.amount + tx.fee
                balances[tx.receiver] += tx.amount
                total_fee += tx.fee
            balances[miner_id] += self.block_reward + total_fee
            if stake > 0:
                balances[miner_id] += self.staking_reward
            self.total_mined += self.block_reward

        self._update_reward(shard_id)
        if self.nodes:
            self._broadcast_block(block, self.nodes[0])
        self._compress_state(shard_id)
        return block

    def _broadcast_block(self, block: AhmiyatBlock, sender: Node) -> None:
        data = block.serialize().encode("utf-8")
        peers = [
            peer
            for peer in self.dht.find_peers(sender.node_id, _MAX_BROADCAST_PEERS)
            if peer.node_id != sender.node_id
        ]
        workers = [
            threading.Thread(target=self._send_block, args=(peer, data, block.shard_id))
            for peer in peers
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

    def _send_block(self, peer: Node, data: bytes, shard_id: str) -> None:
        try:
            ipaddress.IPv4Address(peer.ip)
            with socket.create_connection(
                (peer.ip, peer.port), timeout=self._broadcast_timeout
            ) as conn:
                conn.sendall(data)
            log(f"Broadcast to {peer.node_id} in shard {shard_id}")
        except (OSError, ValueError) as exc:
            log(f"Broadcast failed to {peer.node_id}: {exc}")

    def add_node(self, node_id: str, ip: str, port: int) -> None:
        """Register a peer node; invalid parameters are logged and ignored."""
        with self._lock:
            if not node_id or not ip or port <= 0:
                log("Invalid node parameters")
                return
            node = Node(node_id, ip, port)
            self.nodes.append(node)
            self.dht.add_peer(node)

    def get_balance(self, address: str, shard_id: str = "0") -> float:
        """Balance of ``address`` in a shard; 0.0 when unknown."""
        with self._lock:
            if not address or shard_id not in self.balances:
                return 0.0
            return self.balances[shard_id].get(address, 0.0)

    def stake_coins(self, address: str, amount: float, shard_id: str = "0") -> None:
        """Move coins from balance to stake when the balance covers them."""
        with self._lock:
            if amount <= 0 or not address or shard_id not in self.balances:
                return
            balances = self.balances[shard_id]
            if balances.get(address, 0.0) >= amount:
                balances[address] -= amount
                self.stakes[shard_id][address] += amount
                log(f"{address} staked {amount:f} {self.COIN_SYMBOL} in shard {shard_id}")

    def adjust_difficulty(self, shard_id: str) -> int:
        """Retarget the shard's difficulty from recent block times; return it."""
        with self._lock:
            blocks = self.shards[shard_id]
            if len(blocks) <= 10:
                return self.difficulties.get(shard_id, 0)
            last_ten_time = blocks[-1].timestamp - blocks[-10].timestamp
            average_stake = sum(block.stake_weight for block in blocks) / len(blocks)
            if last_ten_time < TARGET_BLOCK_TIME or average_stake > 1000:
                self.difficulties[shard_id] += 1
            elif last_ten_time > 2 * TARGET_BLOCK_TIME:
                self.difficulties[shard_id] = max(1, self.difficulties[shard_id] - 1)
            difficulty = self.difficulties[shard_id]
        log(f"Difficulty adjusted in shard {shard_id} to: {difficulty}")
        return difficulty

    def handle_connection(self, data: bytes) -> None:
        """Handle data received from a peer."""
        self.sync_chain(data.decode("utf-8", errors="replace"))
        self.process_pending_txs()

    def _serve_client(self, client: socket.socket) -> None:
        with client:
            try:
                client.settimeout(self._broadcast_timeout)
                data = client.recv(_READ_SIZE)
                if data:
                    self.handle_connection(data)
            except Exception as exc:
                log(f"Listener error: {exc}")

    def start_node_listener(self, port: int, stop_event: threading.Event | None = None) -> None:
        """Accept peer connections on ``port`` until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server.bind(("", port))
        except OSError:
            log(f"Bind failed on port {port}")
            server.close()
            return
        with server:
            server.listen(20)
            server.settimeout(0.5)
            log(f"Node listening on port {port}")
            while not stop_event.is_set():
                try:
                    client, _ = server.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    log(f"Accept error: {exc}")
                    continue
                worker = threading.Thread(target=self._serve_client, args=(client,))
                worker.start()
                worker.join()

    def stress_test(self, num_blocks: int) -> None:
        """Mine ``num_blocks`` test blocks from a fresh wallet."""
        wallet = Wallet.generate()
        for i in range(num_blocks):
            try:
                tx = Transaction(wallet.public_key, f"test{i}", 1.0)
                memory = MemoryFragment.create(
                    "text",
                    self._memory_path(f"test{i}.txt"),
                    "Test block",
                    wallet.public_key,
                    0,
                    self._uploader,
                )
                stake = self.stakes.get(self.assign_shard(tx), {}).get(wallet.public_key, 0.0)
                self.add_block([tx], memory, wallet.public_key, stake)
            except Exception as exc:
                log(f"Stress test block {i} failed: {exc}")
        log(f"Stress test completed: {num_blocks} blocks added across shards")

    def propose_upgrade(self, proposer_id: str, description: str) -> str | None:
        """Open a governance proposal and return its id."""
        with self._lock:
            if not proposer_id or not description:
                return None
            proposal_id = f"{proposer_id}{time.time_ns()}"
            self.proposals[proposal_id] = (description, 0)
        log(f"Proposal {proposal_id} submitted: {description}")
        return proposal_id

    def vote_for_upgrade(self, voter_id: str, proposal_id: str) -> None:
        """Add the voter's stake in every shard to a proposal's votes."""
        with self._lock:
            if proposal_id not in self.proposals:
                return
            for stakes in self.stakes.values():
                if voter_id in stakes:
                    description, votes = self.proposals[proposal_id]
                    self.proposals[proposal_id] = (description, int(votes + stakes[voter_id]))
                    log(f"{voter_id} voted for {proposal_id} with {stakes[voter_id]:f} stake")

    def get_shard_status(self, shard_id: str) -> str:
        """A short report of a shard's size, total balance and difficulty."""
        with self._lock:
            if shard_id not in self.shards:
                return "Shard not found"
            total = sum(self.balances.get(shard_id, {}).values())
            return (
                f"Shard {shard_id}:\n"
                f"Blocks: {len(self.shards[shard_id])}\n"
                f"Total Balance: {total:g} {self.COIN_SYMBOL}\n"
                f"Difficulty: {self.difficulties[shard_id]}\n"
            )

    def handle_cross_shard_tx(self, tx: Transaction) -> None:
        """Move funds from the sender's shard to the receiver's shard."""
        with self._lock:
            if not tx.validate():
                return
            from_shard = tx.shard_id
            to_shard = self.assign_shard(Transaction(tx.receiver, tx.sender, 0.0, fee=0.0))
            if from_shard == to_shard:
                return
            source = self.balances[from_shard]
            if source[tx.sender] >= tx.amount + tx.fee:
                source[tx.sender] -= tx.amount + tx.fee
                self.balances[to_shard][tx.receiver] += tx.amount
                log(
                    f"Cross-shard tx from {from_shard} to {to_shard}: "
                    f"{tx.amount:f} {self.COIN_SYMBOL}"
                )
            else:
                log("Cross-shard tx failed: insufficient balance")

    def add_pending_tx(self, tx: Transaction) -> None:
        """Queue a valid transaction for mining."""
        if not tx.validate():
            log("Invalid pending tx rejected")
            return
        with self._lock:
            self.pending_txs.append(tx)
        log(f"Added pending tx: {tx.digest()}")