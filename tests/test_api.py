"""
HTTP API tests.

The app runs against in-memory backends injected through app.state, so
the whole store → anchor → verify path is exercised without a network.
"""

import pytest
from fastapi.testclient import TestClient

from matchproof.core import BatchConfig, Hasher, TransactionConfig, verify_proof
from matchproof.core.merkle import MerkleProof
from matchproof.ledger import InMemoryLedger
from matchproof.main import app
from matchproof.services import create_services
from matchproof.storage import InMemoryObjectStore

from conftest import MATCH_ID, make_record


@pytest.fixture
def services(coordinator_keys):
    return create_services(
        store=InMemoryObjectStore(),
        ledger=InMemoryLedger(),
        transaction_config=TransactionConfig(max_attempts=1),
        batch_config=BatchConfig(auto_flush=False),
    )


@pytest.fixture
def client(services):
    app.state.services = services
    with TestClient(app) as test_client:
        yield test_client
    del app.state.services


class TestSystem:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "matchproof"
        assert body["checks"]["object_store"]["backend"] == "InMemoryObjectStore"
        assert body["checks"]["ledger_circuit"]["state"] == "closed"

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_metrics(self, client, record):
        client.post("/api/matches", params={"anchor": "direct"}, json=record)
        client.get(f"/api/matches/{MATCH_ID}/verify")

        body = client.get("/api/metrics").json()
        assert body["anchors_submitted"] == 1
        assert body["verifications_passed"] == 1
        assert body["pending_batch_entries"] == 0
        assert body["ledger_circuit"]["state"] == "closed"
        assert body["requests_total"] >= 2


class TestCanonicalize:

    def test_canonical_bytes_and_hash(self, client):
        response = client.post("/api/canonicalize", json={"b": 1, "a": [1.50, "x"]})
        assert response.status_code == 200
        body = response.json()
        assert body["canonical"] == '{"a":[1.5,"x"],"b":1}'
        assert body["sha256"] == Hasher.hash_bytes(b'{"a":[1.5,"x"],"b":1}')
        assert body["byte_length"] == 21

    def test_scalar(self, client):
        assert client.post("/api/canonicalize", json="x").json()["canonical"] == '"x"'


class TestDirectAnchoring:

    def test_upload_then_verify(self, client, record):
        response = client.post("/api/matches", params={"anchor": "direct"}, json=record)
        assert response.status_code == 201
        body = response.json()
        assert body["match_id"] == MATCH_ID
        assert body["match_hash"] == Hasher.hash_value(record)
        assert body["anchor"]["transaction_id"].startswith("tx-")
        assert body["pending_in_batch"] is False

        verdict = client.get(f"/api/matches/{MATCH_ID}/verify").json()
        assert verdict["is_valid"] is True, verdict["errors"]
        assert verdict["on_chain_hash"] == body["match_hash"]
        assert verdict["anchor_transaction"] == body["anchor"]["transaction_id"]

    def test_store_only(self, client, record):
        body = client.post("/api/matches", params={"anchor": "none"}, json=record).json()
        assert body["anchor"] is None
        verdict = client.get(f"/api/matches/{MATCH_ID}/verify").json()
        assert verdict["is_valid"] is False
        assert any("No on-chain anchor" in e for e in verdict["errors"])

    def test_tampered_store_detected(self, client, record):
        client.post("/api/matches", params={"anchor": "direct"}, json=record)
        tampered = make_record(seed=7)
        client.post("/api/matches", params={"anchor": "none"}, json=tampered)

        verdict = client.get(f"/api/matches/{MATCH_ID}/verify").json()
        assert verdict["is_valid"] is False
        assert any("Hash mismatch" in e for e in verdict["errors"])

    def test_invalid_record(self, client):
        bad = make_record()
        bad["moves"][0]["index"] = 3
        response = client.post("/api/matches", json=bad)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "CanonicalizationError"

    def test_unknown_anchor_mode(self, client, record):
        response = client.post("/api/matches", params={"anchor": "sideways"}, json=record)
        assert response.status_code == 422

    def test_verify_missing_match(self, client):
        assert client.get(f"/api/matches/{MATCH_ID}/verify").status_code == 404


class TestBatchAnchoring:

    def test_batch_flush_verify_and_prove(self, client, record):
        others = [make_record(match_id=f"00000000-0000-4000-8000-{i:012d}") for i in range(3)]
        for other in others:
            assert client.post("/api/matches", json=other).json()["pending_in_batch"] is True
        upload = client.post("/api/matches", json=record).json()
        assert upload["pending_in_batch"] is True
        assert upload["batch_id"] is None

        flushed = client.post("/api/batches/flush").json()
        assert flushed["flushed"] is True
        assert flushed["match_count"] == 4
        assert flushed["anchor_txid"]

        manifest = client.get(f"/api/batches/{flushed['batch_id']}").json()
        assert manifest["match_ids"][-1] == MATCH_ID
        assert manifest["merkle_root"] == flushed["merkle_root"]
        assert manifest["signature"]

        proof = client.get(f"/api/matches/{MATCH_ID}/proof").json()
        assert proof["batch_id"] == flushed["batch_id"]
        assert verify_proof(MerkleProof.from_dict(proof["proof"]), flushed["merkle_root"])

        verdict = client.get(f"/api/matches/{MATCH_ID}/verify").json()
        assert verdict["is_valid"] is True, verdict["errors"]
        assert verdict["merkle_verified"] is True
        assert verdict["batch_id"] == flushed["batch_id"]

        metrics = client.get("/api/metrics").json()
        assert metrics["batches_flushed"] == 1
        assert metrics["matches_batched"] == 4

    def test_empty_flush(self, client):
        assert client.post("/api/batches/flush").json() == {
            "flushed": False,
            "batch_id": None,
            "match_count": 0,
            "merkle_root": None,
            "anchor_txid": None,
        }

    def test_pending_match_has_no_proof(self, client, record):
        client.post("/api/matches", json=record)
        assert client.get(f"/api/matches/{MATCH_ID}/proof").status_code == 404

    def test_unknown_batch(self, client):
        assert client.get("/api/batches/batch-nope").status_code == 404

    def test_shutdown_flushes_pending(self, services, record):
        app.state.services = services
        with TestClient(app) as test_client:
            test_client.post("/api/matches", json=record)
        del app.state.services
        assert services.batch_manager.pending_count == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
