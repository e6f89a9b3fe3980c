"""
Command line tests.

Commands run in-process through main(argv); --storage/--ledger point
every invocation at the same tmp_path backends.
"""

import json

import pytest

from matchproof.cli import EXIT_ERROR, EXIT_INVALID, EXIT_OK, main
from matchproof.core import Hasher, Signer, canonicalize
from matchproof.schemas import MatchRecord

from conftest import MATCH_ID, make_record


@pytest.fixture
def record_file(tmp_path, record):
    path = tmp_path / "match.json"
    path.write_text(json.dumps(record, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def backends(tmp_path, coordinator_keys):
    return ["--storage", str(tmp_path / "objects"), "--ledger", str(tmp_path / "ledger.jsonl")]


class TestCanonicalize:

    def test_prints_canonical_and_hash(self, record_file, record, capsys):
        assert main(["canonicalize", str(record_file)]) == EXIT_OK
        captured = capsys.readouterr()
        assert captured.out.strip() == canonicalize(record).decode("utf-8")
        assert f"sha256: {Hasher.hash_value(record)}" in captured.err

    def test_output_file(self, record_file, record, tmp_path):
        out = tmp_path / "canonical.json"
        assert main(["canonicalize", str(record_file), "-o", str(out)]) == EXIT_OK
        assert out.read_bytes() == canonicalize(record)

    def test_missing_file(self, tmp_path, capsys):
        assert main(["canonicalize", str(tmp_path / "nope.json")]) == EXIT_ERROR
        assert "ERROR: Cannot read" in capsys.readouterr().err

    def test_not_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        assert main(["canonicalize", str(path)]) == EXIT_ERROR


class TestKeys:

    def test_keygen_json(self, capsys):
        assert main(["keygen", "--json"]) == EXIT_OK
        keys = json.loads(capsys.readouterr().out)
        assert len(keys["public_key"]) == 64
        assert len(keys["private_key"]) == 96

    def test_keygen_text(self, capsys):
        assert main(["keygen"]) == EXIT_OK
        assert "MATCHPROOF_COORDINATOR_PRIVATE_KEY=" in capsys.readouterr().out

    def test_sign(self, record_file, player_keys, tmp_path):
        out = tmp_path / "signed.json"
        assert main(["sign", str(record_file), "--key", player_keys.private_key, "-o", str(out)]) == EXIT_OK

        signed = MatchRecord.model_validate_json(out.read_bytes())
        assert len(signed.signatures) == 1
        assert signed.signatures[0].public_key == player_keys.public_key
        assert Signer.verify(canonicalize(signed.unsigned_document()), signed.signatures[0])

    def test_sign_warns_for_non_player_key(self, tmp_path, player_keys, capsys):
        doc = make_record()
        doc["players"][0]["public_key"] = "ab" * 32
        path = tmp_path / "match.json"
        path.write_text(json.dumps(doc), encoding="utf-8")

        assert main(["sign", str(path), "--key", player_keys.private_key]) == EXIT_OK
        assert "not a listed player key" in capsys.readouterr().err

    def test_sign_bad_key(self, record_file, capsys):
        assert main(["sign", str(record_file), "--key", "abcd"]) == EXIT_ERROR


class TestUploadAndVerify:
    """Round trips through on-disk backends."""

    def test_direct_upload_then_verify(self, record_file, backends, capsys):
        assert main(["upload", "--file", str(record_file), "--anchor", "direct", *backends]) == EXIT_OK
        upload = json.loads(capsys.readouterr().out)
        assert upload["match_id"] == MATCH_ID
        assert upload["anchor"]["transaction_id"]

        assert main(["verify", MATCH_ID, *backends]) == EXIT_OK
        out = capsys.readouterr().out
        assert "[VALID]" in out
        assert upload["anchor"]["transaction_id"] in out

    def test_batch_upload_flush_verify(self, record_file, backends, capsys):
        assert main(["upload", "--file", str(record_file), *backends]) == EXIT_OK
        assert json.loads(capsys.readouterr().out)["pending_in_batch"] is True

        assert main(["flush", *backends]) == EXIT_OK
        out = capsys.readouterr().out
        assert "Matches:     1" in out
        assert "NOT ANCHORED" not in out

        assert main(["verify", MATCH_ID, "--json", *backends]) == EXIT_OK
        verdict = json.loads(capsys.readouterr().out)
        assert verdict["is_valid"] is True
        assert verdict["merkle_verified"] is True

    def test_flush_with_nothing_pending(self, backends, capsys):
        assert main(["flush", *backends]) == EXIT_OK
        assert "Nothing to flush" in capsys.readouterr().out

    def test_tampered_file_is_invalid(self, record_file, backends, tmp_path, capsys):
        assert main(["upload", "--file", str(record_file), "--anchor", "direct", *backends]) == EXIT_OK
        tampered = tmp_path / "tampered.json"
        tampered.write_text(json.dumps(make_record(seed=99)), encoding="utf-8")
        capsys.readouterr()

        assert main(["verify", MATCH_ID, "--file", str(tampered), *backends]) == EXIT_INVALID
        out = capsys.readouterr().out
        assert "[INVALID]" in out
        assert "Hash mismatch" in out

    def test_same_file_verifies_after_upload(self, tmp_path, backends, capsys):
        """A sparse file with an upper-case id checks out against its own upload."""
        doc = make_record(match_id=MATCH_ID.upper())
        for key in ("version", "signatures", "end_time"):
            del doc[key]
        path = tmp_path / "sparse.json"
        path.write_text(json.dumps(doc), encoding="utf-8")

        assert main(["upload", "--file", str(path), "--anchor", "direct", *backends]) == EXIT_OK
        capsys.readouterr()
        assert main(["verify", MATCH_ID.upper(), "--file", str(path), *backends]) == EXIT_OK
        assert "[VALID]" in capsys.readouterr().out

    def test_verify_unknown_match(self, backends, capsys):
        assert main(["verify", MATCH_ID, *backends]) == EXIT_ERROR
        assert "not found" in capsys.readouterr().err

    def test_upload_invalid_record(self, tmp_path, backends, capsys):
        bad = make_record()
        bad["start_time"] = "2025-01-15T10:00:00"
        path = tmp_path / "bad.json"
        path.write_text(json.dumps(bad), encoding="utf-8")
        assert main(["upload", "--file", str(path), *backends]) == EXIT_ERROR
        assert "Invalid match record" in capsys.readouterr().err

    def test_unknown_storage_driver(self, record_file, monkeypatch, capsys):
        monkeypatch.setenv("MATCHPROOF_STORAGE_DRIVER", "s3")
        assert main(["upload", "--file", str(record_file)]) == EXIT_ERROR
        assert "MATCHPROOF_STORAGE_DRIVER" in capsys.readouterr().err


def test_no_command_prints_help(capsys):
    assert main([]) == EXIT_ERROR
    assert "usage" in capsys.readouterr().out.lower()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
