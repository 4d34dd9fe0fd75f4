"""Command-line entry point: node listener, miner and HTTP API."""

from __future__ import annotations

import re
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from os import PathLike
from urllib.parse import parse_qs, urlsplit

from ahmiyat.chain import AhmiyatChain
from ahmiyat.models import (
    InvalidBlockError,
    MemoryFragment,
    MiningError,
    Transaction,
)
from ahmiyat.utils import log
from ahmiyat.wallet import Wallet

API_PORT = 8080
CONFIG_FILE = "config.txt"

_LEADING_FLOAT = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _leading_float(text: str) -> float:
    match = _LEADING_FLOAT.match(text)
    return float(match.group(1)) if match else 0.0


def _leading_int(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def _query_value(query: dict[str, list[str]], name: str, default: str) -> str:
    values = query.get(name)
    return values[0] if values else default


def handle_api_request(chain: AhmiyatChain, method: str, path: str, body: bytes | str) -> str:
    """Answer one API request and return the response text."""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    parts = urlsplit(path)
    route = parts.path
    query = parse_qs(parts.query, keep_blank_values=True)

    if method == "GET":
        if route == "/balance":
            address = _query_value(query, "address", "genesis")
            shard = _query_value(query, "shard", "0")
            return f"{chain.get_balance(address, shard):f}"
        if route == "/shard":
            return chain.get_shard_status(_query_value(query, "shard", "0"))
        return ""

    if method == "POST" and route == "/tx" and body:
        sender, _, rest = body.partition("&")
        try:
            tx = Transaction(sender, "receiver", _leading_float(rest), 0.001)
        except ValueError as exc:
            return f"Invalid transaction: {exc}"
        chain.add_pending_tx(tx)
        return "Transaction queued"
    return ""


class ApiHandler(BaseHTTPRequestHandler):
    """HTTP handler that answers every request with status 200."""

    server: "_ApiServer"

    def _respond(self, method: str) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else b""
        text = handle_api_request(self.server.chain, method, self.path, body)
        payload = text.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_GET(self) -> None:  # noqa: N802
        self._respond("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._respond("POST")

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        log(format % args)


class _ApiServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], chain: AhmiyatChain) -> None:
        self.chain = chain
        super().__init__(address, ApiHandler)


def make_api_server(chain: AhmiyatChain, port: int = API_PORT) -> ThreadingHTTPServer:
    """Create (but do not start) the HTTP API server bound to ``port``."""
    return _ApiServer(("", port), chain)


def run_api(
    chain: AhmiyatChain,
    port: int = API_PORT,
    stop_event: threading.Event | None = None,
) -> bool:
    """Serve the API until ``stop_event`` is set; False if it could not start."""
    stop_event = stop_event or threading.Event()
    try:
        server = make_api_server(chain, port)
    except OSError:
        log("Failed to start API server")
        return False
    with server:
        worker = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.2})
        worker.start()
        log(f"API server running on port {port}")
        try:
            while not stop_event.wait(1.0):
                pass
        finally:
            server.shutdown()
            worker.join()
    return True


def load_config(chain: AhmiyatChain, config_file: str | PathLike[str]) -> None:
    """Read ``node:`` and ``bootstrap:`` lines and register the peers they name."""
    try:
        with open(config_file, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except OSError:
        log(f"Failed to open config file: {config_file}")
        return
    for line in lines:
        if line.startswith("node:"):
            node_id, _, rest = line[5:].partition(",")
            ip, _, rest = rest.partition(",")
            chain.add_node(node_id, ip, _leading_int(rest))
        elif line.startswith("bootstrap:"):
            ip, _, rest = line[10:].partition(",")
            chain.dht.bootstrap(ip, _leading_int(rest))


def mine_block(chain: AhmiyatChain, miner_id: str) -> list:
    """Mine a sample block from a fresh wallet and retarget its shard."""
    wallet = Wallet.generate()
    tx = Transaction(wallet.public_key, "Babar", 50.0, 0.001, "BALANCE_CHECK=10")
    memory = MemoryFragment.create(
        "image",
        str(chain.memory_dir / "mountain.jpg"),
        "Mountain trip",
        wallet.public_key,
        3600,
    )
    blocks = chain.add_block([tx], memory, wallet.public_key, chain.get_balance(wallet.public_key))
    chain.adjust_difficulty(tx.shard_id)
    return blocks


def main(argv: list[str] | None = None) -> int:
    """Run a node: peer listener, a miner, a stress test and the HTTP API."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        log("Usage: ahmiyat <port>")
        return 1
    port = _leading_int(args[0])
    stop_event = threading.Event()

    try:
        signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())
    except ValueError:
        pass

    try:
        chain = AhmiyatChain()
    except (MiningError, InvalidBlockError, OSError) as exc:
        log(f"Failed to start chain: {exc}")
        return 1

    with chain:
        load_config(chain, CONFIG_FILE)
        node_thread = threading.Thread(
            target=chain.start_node_listener, args=(port, stop_event), daemon=True
        )
        miner_thread = threading.Thread(target=mine_block, args=(chain, f"Miner{port}"))
        api_thread = threading.Thread(target=run_api, args=(chain, API_PORT, stop_event))
        node_thread.start()
        miner_thread.start()
        api_thread.start()

        miner_thread.join()
        chain.stress_test(10)

        log(f"Balance of genesis: {chain.get_balance('genesis'):f}")
        log(f"Optimized node running on port {port}")

        api_thread.join()
        stop_event.set()
        node_thread.join(timeout=2.0)
    return 0