"""
Transaction Handler

The ONE place that owns retry policy for ledger writes. Callers hand it a
payload and get back a confirmed transaction id or an exception. Callers
must not wrap it in a second retry loop.

STAGES (reported to the progress callback):
    building → signing → sending → confirming → confirmed | failed

RETRY POLICY:
- Only errors classify_error() marks transient are retried
- Delay before retry n (0-based) is min(base_delay * 2**n, max_delay)
- After max_attempts the last error is raised as a TransportError

CONFIRMATION:
- wait_for_confirmation races a timeout
- On timeout the status is polled once more, because the transaction may
  have landed after the client gave up waiting

CANCELLATION:
- Submission is shielded. Cancelling the caller aborts the wait, never a
  transaction that is already being broadcast.

CONFIGURATION:
- MATCHPROOF_TX_MAX_ATTEMPTS (default: 3)
- MATCHPROOF_TX_BASE_DELAY_SECONDS (default: 1.0)
- MATCHPROOF_TX_MAX_DELAY_SECONDS (default: 10.0)
- MATCHPROOF_TX_CONFIRMATION_TIMEOUT_SECONDS (default: 30)
- MATCHPROOF_TX_COMMITMENT: processed | confirmed | finalized (default: confirmed)
"""

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from ..ledger.base import (
    CommitmentLevel,
    ConfirmationStatus,
    LedgerClient,
    PayloadSigner,
    TransactionStatus,
)
from .circuit_breaker import CircuitBreaker
from ..errors import (
    CircuitOpenError,
    PermanentTransportError,
    TransientTransportError,
    classify_error,
    to_transport_error,
)

logger = logging.getLogger(__name__)

DEFAULT_FEE_ESTIMATE = 5000


class TransactionStage(str, Enum):
    BUILDING = "building"
    SIGNING = "signing"
    SENDING = "sending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionProgress:
    """One progress report."""
    stage: TransactionStage
    attempt: int            # 1-based
    max_attempts: int
    transaction_id: Optional[str] = None
    message: str = ""
    error: Optional[str] = None


ProgressCallback = Callable[[TransactionProgress], Union[None, Awaitable[None]]]


@dataclass
class TransactionConfig:
    """Retry and confirmation settings."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    confirmation_timeout_seconds: float = 30.0
    commitment: CommitmentLevel = CommitmentLevel.CONFIRMED

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_env(cls) -> "TransactionConfig":
        return cls(
            max_attempts=int(os.environ.get("MATCHPROOF_TX_MAX_ATTEMPTS", "3")),
            base_delay_seconds=float(os.environ.get("MATCHPROOF_TX_BASE_DELAY_SECONDS", "1.0")),
            max_delay_seconds=float(os.environ.get("MATCHPROOF_TX_MAX_DELAY_SECONDS", "10.0")),
            confirmation_timeout_seconds=float(
                os.environ.get("MATCHPROOF_TX_CONFIRMATION_TIMEOUT_SECONDS", "30")
            ),
            commitment=CommitmentLevel(
                os.environ.get("MATCHPROOF_TX_COMMITMENT", "confirmed").lower()
            ),
        )


@dataclass
class TransactionResult:
    """A confirmed ledger write."""
    transaction_id: str
    attempts: int
    fee_estimate: int
    status: TransactionStatus = TransactionStatus.CONFIRMED
    stages: list[TransactionStage] = field(default_factory=list)


class TransactionHandler:
    """
    Submits payloads to a ledger with retries, backoff and confirmation.

    Usage:
        handler = TransactionHandler(ledger, TransactionConfig.from_env())
        result = await handler.submit(payload, on_progress=print)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        config: Optional[TransactionConfig] = None,
        signer: Optional[PayloadSigner] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.config = config or TransactionConfig()
        self.signer = signer
        self.circuit_breaker = circuit_breaker
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt `attempt` (0-based)."""
        return min(
            self.config.base_delay_seconds * (2 ** attempt),
            self.config.max_delay_seconds,
        )

    async def estimate_fee(self, payload: bytes) -> int:
        """Ledger fee estimate; falls back to a fixed default if the ledger cannot say."""
        try:
            return int(await self.ledger.estimate_fee(payload))
        except Exception as e:
            logger.warning(f"Fee estimate failed, using default {DEFAULT_FEE_ESTIMATE}: {e}")
            return DEFAULT_FEE_ESTIMATE

    async def submit(
        self,
        payload: bytes,
        on_progress: Optional[ProgressCallback] = None,
        signer: Optional[PayloadSigner] = None,
    ) -> TransactionResult:
        """
        Submit and confirm a payload.

        Raises:
            PermanentTransportError: Rejected by the ledger, not retried
            TransientTransportError: Still failing after max_attempts
            CircuitOpenError: The circuit breaker is open
        """
        signer = signer or self.signer
        max_attempts = self.config.max_attempts
        stages: list[TransactionStage] = []

        async def report(stage: TransactionStage, attempt: int, **kwargs) -> None:
            stages.append(stage)
            await self._report(on_progress, TransactionProgress(
                stage=stage, attempt=attempt, max_attempts=max_attempts, **kwargs
            ))

        for attempt in range(max_attempts):
            try:
                if self.circuit_breaker is not None:
                    self.circuit_breaker.before_call()
                result = await self._attempt(payload, signer, attempt + 1, report)
            except CircuitOpenError as e:
                await report(TransactionStage.FAILED, attempt + 1, error=str(e))
                raise
            except Exception as e:
                details = classify_error(e)
                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_failure()

                is_last = attempt + 1 >= max_attempts
                if not details.retryable or is_last:
                    logger.error(
                        f"Transaction failed after {attempt + 1} attempt(s) "
                        f"[{details.code.value}]: {details.message}"
                    )
                    await report(TransactionStage.FAILED, attempt + 1, error=details.message,
                                 message=details.user_message)
                    wrapped = to_transport_error(e, details)
                    if wrapped is e:
                        raise
                    raise wrapped from e

                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Transaction attempt {attempt + 1}/{max_attempts} failed "
                    f"[{details.code.value}], retrying in {delay:.1f}s: {details.message}"
                )
                await self._sleep(delay)
            else:
                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_success()
                result.stages = stages
                return result

        # Unreachable: the loop either returns or raises
        raise TransientTransportError("Transaction retries exhausted")

    async def _attempt(self, payload: bytes, signer, attempt: int, report) -> TransactionResult:
        await report(TransactionStage.BUILDING, attempt, message=f"{len(payload)} byte payload")
        if not payload:
            raise PermanentTransportError("malformed payload: empty")
        fee = await self.estimate_fee(payload)

        await report(TransactionStage.SIGNING, attempt,
                     message=f"signer {signer.public_key[:16]}..." if signer else "ledger default signer")

        await report(TransactionStage.SENDING, attempt)
        # shield: a cancelled caller must not abort a broadcast in flight
        transaction_id = await asyncio.shield(self.ledger.submit_payload(payload, signer))

        await report(TransactionStage.CONFIRMING, attempt, transaction_id=transaction_id)
        status = await self._confirm(transaction_id)

        await report(TransactionStage.CONFIRMED, attempt, transaction_id=transaction_id)
        logger.info(f"Transaction {transaction_id} confirmed on attempt {attempt}")
        return TransactionResult(
            transaction_id=transaction_id,
            attempts=attempt,
            fee_estimate=fee,
            status=status,
        )

    def _meets_commitment(self, status: Optional[TransactionStatus]) -> bool:
        if status is None:
            return False
        if self.config.commitment == CommitmentLevel.FINALIZED:
            return status == TransactionStatus.FINALIZED
        return status.is_landed

    async def _confirm(self, transaction_id: str) -> TransactionStatus:
        timeout = self.config.confirmation_timeout_seconds
        try:
            outcome = await asyncio.wait_for(
                self.ledger.wait_for_confirmation(transaction_id, self.config.commitment, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            outcome = ConfirmationStatus.TIMED_OUT

        if outcome == ConfirmationStatus.CONFIRMED:
            return (
                TransactionStatus.FINALIZED
                if self.config.commitment == CommitmentLevel.FINALIZED
                else TransactionStatus.CONFIRMED
            )

        if outcome == ConfirmationStatus.FAILED:
            raise TransientTransportError(
                f"network: transaction {transaction_id} was dropped before confirmation"
            )

        # Timed out waiting; it may have landed anyway
        status = await self.ledger.get_transaction_status(transaction_id)
        if self._meets_commitment(status):
            logger.info(f"Transaction {transaction_id} landed after confirmation wait timed out")
            return status
        raise TransientTransportError(
            f"timeout: transaction {transaction_id} not {self.config.commitment.value} "
            f"within {timeout}s (status: {status.value if status else 'unknown'})"
        )

    @staticmethod
    async def _report(callback: Optional[ProgressCallback], progress: TransactionProgress) -> None:
        if callback is None:
            return
        try:
            result = callback(progress)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Progress callback failed at stage {progress.stage.value}")
