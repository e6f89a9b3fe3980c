"""
Shared fixtures for the match integrity tests.
"""

from typing import Optional

import pytest

from matchproof.core import KeyManager, Signer, SigningService, canonicalize
from matchproof.errors import PermanentTransportError, TransientTransportError
from matchproof.ledger import InMemoryLedger
from matchproof.observability import get_metrics
from matchproof.schemas import MatchRecord


MATCH_ID = "6f1c2b9e-3d4a-4b5c-8d7e-9f0a1b2c3d4e"


def make_record(match_id: str = MATCH_ID, move_count: int = 3, **overrides) -> dict:
    """A valid match record document."""
    record = {
        "version": "1.0.0",
        "match_id": match_id,
        "game": {"name": "hearts", "ruleset": "standard-2p"},
        "seed": 424242,
        "start_time": "2025-01-15T10:00:00.000Z",
        "end_time": "2025-01-15T10:30:00.000Z",
        "players": [
            {"player_id": "p1", "type": "human"},
            {"player_id": "p2", "type": "ai"},
        ],
        "moves": [
            {
                "index": i,
                "timestamp": f"2025-01-15T10:{i:02d}:00.000Z",
                "player_id": "p1" if i % 2 == 0 else "p2",
                "action": "play_card",
                "payload": {"card": f"H{i + 2}"},
            }
            for i in range(move_count)
        ],
        "signatures": [],
        "outcome": {"winner": "p1", "scores": {"p1": 26, "p2": 0}},
    }
    record.update(overrides)
    return record


def sign_record(record: dict, private_key: str) -> dict:
    """Return a copy of record with one more player signature."""
    model = MatchRecord.model_validate(record)
    signature = Signer.sign(canonicalize(model.unsigned_document()), private_key)
    return model.with_signature(signature).to_document()


class FlakyLedger(InMemoryLedger):
    """
    In-memory ledger that fails the first submissions on purpose.

    Args:
        failures: Exceptions raised by successive submit_payload calls
            before the ledger starts accepting payloads
    """

    def __init__(self, failures: Optional[list[Exception]] = None, **kwargs):
        super().__init__(**kwargs)
        self.failures = list(failures or [])
        self.submit_calls = 0

    async def submit_payload(self, payload: bytes, signer=None) -> str:
        self.submit_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return await super().submit_payload(payload, signer)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Isolate every test from real keys, the singleton and global metrics."""
    for name in (
        "MATCHPROOF_PRODUCTION",
        "MATCHPROOF_COORDINATOR_PRIVATE_KEY",
        "MATCHPROOF_COORDINATOR_PUBLIC_KEY",
        "MATCHPROOF_STORAGE_DRIVER",
        "MATCHPROOF_LEDGER_DRIVER",
        "MATCHPROOF_TRUSTED_MANIFEST_KEYS",
    ):
        monkeypatch.delenv(name, raising=False)
    # Keep retries fast everywhere services are built from the environment
    monkeypatch.setenv("MATCHPROOF_TX_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("MATCHPROOF_TX_MAX_DELAY_SECONDS", "0")
    SigningService.reset()
    get_metrics().reset()
    yield
    SigningService.reset()


@pytest.fixture
def record() -> dict:
    return make_record()


@pytest.fixture
def player_keys():
    return KeyManager.generate_keypair()


@pytest.fixture
def coordinator_keys(monkeypatch):
    keys = KeyManager.generate_keypair()
    monkeypatch.setenv("MATCHPROOF_COORDINATOR_PRIVATE_KEY", keys.private_key)
    SigningService.reset()
    return keys


@pytest.fixture
def transient_error():
    return TransientTransportError("network: connection reset by peer")


@pytest.fixture
def permanent_error():
    return PermanentTransportError("invalid signature: rejected by ledger")
