"""Logging, hashing and IPFS helpers shared across the node."""

from __future__ import annotations

import hashlib
import re
import time
from os import PathLike
from pathlib import Path

import requests

LOG_FILE = "ahmiyat.log"
IPFS_ADD_URL = "http://127.0.0.1:5001/api/v0/add"

_HASH_PATTERN = re.compile(r'"Hash":"([^"]*)"')


def log(message: str) -> None:
    """Append a timestamped line to the node's log file."""
    with open(LOG_FILE, "a", encoding="utf-8") as log_file:
        log_file.write(f"[{int(time.time())}] {message}\n")


def sha256_hex(data: str | bytes) -> str:
    """Return the lower-case hex SHA-256 digest of ``data``."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def upload_to_ipfs(file_path: str | PathLike[str]) -> str:
    """Upload a file to a local IPFS daemon and return its content hash.

    Returns an empty string when the file cannot be read, the request fails
    or the daemon's reply carries no hash.
    """
    try:
        data = Path(file_path).read_bytes()
    except OSError:
        log(f"Failed to open file for IPFS upload: {file_path}")
        return ""

    try:
        response = requests.post(
            IPFS_ADD_URL, files={"file": (str(file_path), data)}, timeout=30
        )
    except requests.RequestException as exc:
        log(f"IPFS upload failed: {exc}")
        return ""

    match = _HASH_PATTERN.search(response.text)
    if match is None:
        log("IPFS upload failed: no hash in response")
        return ""
    ipfs_hash = match.group(1)
    log(f"Uploaded to IPFS: {ipfs_hash}")
    return ipfs_hash


def generate_zk_proof(data: str | bytes) -> str:
    """Return the state commitment used as the shard's proof."""
    return sha256_hex(data)