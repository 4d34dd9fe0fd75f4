# ahmiyat

A small sharded ledger node. Each transaction is assigned to one of sixteen
shards from the hash of its sender. Transactions are grouped into blocks that
carry a "memory fragment": a file written locally and pushed to a local IPFS
daemon at `127.0.0.1:5001`. Blocks are mined with a leading-zeros proof of work
and kept in an SQLite block store. The node also:

- keeps per-shard balances and stakes,
- runs stake-weighted governance votes,
- sends new blocks to known peers over TCP,
- answers a few HTTP queries.

## Installing

```
pip install .
```

## Running a node

```
ahmiyat 9000
```

The single argument is the TCP port on which the node accepts data from
peers. On start the node does the following:

- It creates the `memories/` directory and the block store `ahmiyat_db`.
- It mines the genesis block, which credits 100 AHM to `genesis` in shard `0`.
- It reads peers from `config.txt` in the working directory, if that file is there.
- It mines one sample block and runs a stress test of ten blocks.
- It serves the HTTP API on port 8080 until interrupted with Ctrl-C.

Without a port argument the command logs its usage and exits with status 1.
It also exits with status 1 if the genesis block cannot be mined. Log lines
go to `ahmiyat.log` in the working directory.

**Mining difficulty.** A proof is a number from 0 to 255. Each candidate is
tried once, so mining fails when none of the 256 hashes starts with enough
zeros. At the default difficulty of 4 for shard `0` this almost always happens,
so in practice the command exits with "Failed to start chain" in the log. To
use the chain, build it in code with a low `initial_difficulty`, as shown below.
Shards other than `0` start at difficulty 0.

### config.txt

One entry per line:

```
node:peer-1,192.0.2.10,9001
bootstrap:192.0.2.1,9000
```

- `node:` lines register a peer with an id, an IP address and a port.
  Entries with an empty id, an empty IP address or a port that is not
  positive are logged and ignored.
- `bootstrap:` sets the bootstrap peer of the node's DHT.

## HTTP API

Every request is answered with status 200.

- `GET /balance?address=<addr>&shard=<id>` returns the balance of an address
  with six decimals. The defaults are `genesis` and shard `0`.
- `GET /shard?shard=<id>` returns the block count, total balance and
  difficulty of a shard, or `Shard not found`.
- `POST /tx` with a body `<sender>&<amount>` queues a transaction from the
  sender to the address `receiver`, with a fee of 0.001. The reply is
  `Transaction queued`, or `Invalid transaction: ...` when the transaction
  fails validation.

Queued transactions are mined when a peer next sends data to the node's
listener port. Any other path returns an empty body.

## Using it as a library

```python
from ahmiyat.chain import AhmiyatChain
from ahmiyat.models import Transaction
from ahmiyat.wallet import Wallet

with AhmiyatChain(
    db_path="blocks.db",
    memory_dir="memories",
    initial_difficulty=1,
    uploader=lambda path: "",   # skip the IPFS upload
) as chain:
    print(chain.get_balance("genesis", "0"))      # 100.0
    wallet = Wallet.generate()
    chain.add_pending_tx(Transaction(wallet.public_key, "someone", 1.0))
    chain.process_pending_txs()
    print(chain.get_shard_status("0"))
```

`AhmiyatChain` also provides the following methods:

- `add_block`
- `stake_coins`
- `adjust_difficulty`
- `propose_upgrade` and `vote_for_upgrade`
- `handle_cross_shard_tx`
- `add_node`
- `sign_transaction` and `verify_signature`
- `load_chain_from_db`
- `sync_chain`
- `start_node_listener`, which takes a `threading.Event` to stop it
- `stress_test`

`ahmiyat.cli` provides `handle_api_request`, `make_api_server`, `run_api`,
`load_config` and `mine_block`.

The building blocks live in their own modules:

- `ahmiyat.models`: `Transaction`, `MemoryFragment`, `AhmiyatBlock`,
  `ShardManager` and the exceptions `InvalidTransactionError`,
  `InvalidMemoryError`, `InvalidBlockError` and `MiningError`
- `ahmiyat.dht`: `Node` and `DHT`
- `ahmiyat.wallet`: `Wallet`
- `ahmiyat.utils`: `sha256_hex`, `upload_to_ipfs`, `generate_zk_proof` and `log`

## What it does not do

- Blocks are written to the block store, but they are not read back on
  start. `load_chain_from_db` only lists the stored keys, and every start
  begins again from a fresh genesis block.
- Data received from peers is only checked against the known blocks and
  logged. It is never added to the local chain, so nodes do not converge.
- Transactions are signed with a key generated fresh for each chain
  instance. Wallet keys are not used for signing.
- The "proof" that `generate_zk_proof` makes is a SHA-256 digest of the
  shard's balances, not a zero-knowledge proof.

## Tests

```
pip install .[test]
pytest
```