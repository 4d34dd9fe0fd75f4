from pathlib import Path
from unittest import mock

import pytest
import requests

from ahmiyat import utils


@pytest.fixture(autouse=True)
def _in_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


def _read_log(directory):
    return (Path(directory) / utils.LOG_FILE).read_text()


def test_sha256_hex_known_vector():
    assert (
        utils.sha256_hex("abc")
        == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


def test_sha256_hex_str_and_bytes_agree():
    assert utils.sha256_hex("hello") == utils.sha256_hex(b"hello")


def test_generate_zk_proof_matches_digest():
    proof = utils.generate_zk_proof("genesis100")
    assert proof == utils.sha256_hex("genesis100")
    assert len(proof) == 64


def test_log_appends_lines(tmp_path):
    with mock.patch("ahmiyat.utils.time.time", return_value=1700000000.5):
        results = [utils.log("first"), utils.log("second")]
    assert results == [None, None]
    lines = _read_log(tmp_path).splitlines()
    assert lines == ["[1700000000] first", "[1700000000] second"]


def test_log_keeps_earlier_content(tmp_path):
    (tmp_path / utils.LOG_FILE).write_text("[1] earlier\n")
    with mock.patch("ahmiyat.utils.time.time", return_value=42.0):
        result = utils.log("later")
    assert (result, _read_log(tmp_path)) == (None, "[1] earlier\n[42] later\n")


def test_upload_returns_hash(tmp_path):
    target = tmp_path / "memory.txt"
    target.write_text("Memory Data: x")
    reply = mock.Mock(text='{"Name":"memory.txt","Hash":"QmAbc","Size":"22"}')
    with mock.patch("ahmiyat.utils.requests.post", return_value=reply) as post:
        assert utils.upload_to_ipfs(target) == "QmAbc"
    assert post.call_args.args[0] == utils.IPFS_ADD_URL
    assert post.call_args.kwargs["files"]["file"][1] == b"Memory Data: x"


def test_upload_missing_file_returns_empty(tmp_path):
    with mock.patch("ahmiyat.utils.requests.post") as post:
        assert utils.upload_to_ipfs(tmp_path / "absent.txt") == ""
    assert post.call_count == 0


def test_upload_request_failure_returns_empty(tmp_path):
    target = tmp_path / "memory.txt"
    target.write_text("data")
    with mock.patch(
        "ahmiyat.utils.requests.post",
        side_effect=requests.ConnectionError("refused"),
    ):
        assert utils.upload_to_ipfs(target) == ""
    assert "IPFS upload failed" in _read_log(tmp_path)


def test_upload_reply_without_hash_returns_empty(tmp_path):
    target = tmp_path / "memory.txt"
    target.write_text("data")
    with mock.patch("ahmiyat.utils.requests.post", return_value=mock.Mock(text="{}")):
        assert utils.upload_to_ipfs(target) == ""