"""Completion reconciler: delivers a finished session's claim to the ledger."""

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Union

import config
from core.errors import ClaimRejected, ClaimTransportFailure, LedgerTransportError
from sync.ledger_client import ClaimOutcome, CompletionClaim
from sync.retry import RetryDeadlineExceeded, retry_with_backoff

logger = logging.getLogger(__name__)

# Settled results kept for duplicate detection; oldest are dropped first
SETTLED_CACHE_SIZE = 64


class CompletionReconciler:
    """
    Submits each completion claim once and settles it.

    Transport failures are retried with the same nonce under exponential
    backoff and an overall ceiling. The ceiling also bounds each attempt:
    a ledger call still pending when it runs out is abandoned. The
    ledger's answer is final: an accepted outcome is returned, a denial
    raises ClaimRejected, and an exhausted retry budget raises
    ClaimTransportFailure.
    """

    def __init__(
        self,
        ledger,
        max_retries: int = config.CLAIM_MAX_RETRIES,
        initial_delay: float = config.CLAIM_INITIAL_DELAY,
        max_delay: float = config.CLAIM_MAX_DELAY,
        backoff_factor: float = config.CLAIM_BACKOFF_FACTOR,
        timeout: float = config.CLAIM_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            ledger: Object with submit_completion(claim) -> ClaimOutcome.
            max_retries: Retries after the first attempt.
            initial_delay: First backoff delay in seconds.
            max_delay: Backoff cap in seconds.
            backoff_factor: Delay multiplier per retry.
            timeout: Overall ceiling across attempts, in seconds.
            sleep: Sleep function (injected in tests).
            clock: Monotonic clock (injected in tests).
        """
        self.ledger = ledger
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._settled: "OrderedDict[str, Union[ClaimOutcome, Exception]]" = OrderedDict()
        self._lock = threading.Lock()
        self.attempts = 0  # Ledger calls made, across all claims

    def reconcile(self, claim: CompletionClaim) -> ClaimOutcome:
        """
        Submit a claim and translate the ledger's answer.

        A nonce that was already settled returns (or re-raises) the
        earlier result without contacting the ledger again.

        Args:
            claim: Claim with a fresh session nonce.

        Returns:
            The accepted ClaimOutcome.

        Raises:
            ClaimRejected: The ledger denied the reward.
            ClaimTransportFailure: The claim could not be delivered.
        """
        with self._lock:
            previous = self._settled.get(claim.session_nonce)
        if previous is not None:
            logger.warning(f"Claim for nonce {claim.session_nonce[:8]} already settled, not resubmitting")
            if isinstance(previous, Exception):
                raise previous
            return previous

        logger.info(f"Submitting completion claim for ad {claim.ad_id} (nonce {claim.session_nonce[:8]})")
        deadline = self._clock() + self.timeout

        try:
            outcome = retry_with_backoff(
                lambda: self._submit(claim, deadline),
                max_retries=self.max_retries,
                initial_delay=self.initial_delay,
                max_delay=self.max_delay,
                backoff_factor=self.backoff_factor,
                retryable_exceptions=(LedgerTransportError,),
                timeout=self.timeout,
                sleep=self._sleep,
                clock=self._clock,
            )
        except (LedgerTransportError, RetryDeadlineExceeded) as e:
            failure = ClaimTransportFailure(
                config.OUTCOME_MESSAGES[config.ABORT_CLAIM_TRANSPORT],
                reason=str(e),
            )
            self._settle(claim, failure)
            raise failure from e

        if not outcome.accepted:
            rejection = ClaimRejected(reason=outcome.reason)
            logger.info(f"Claim rejected for ad {claim.ad_id}: {outcome.reason}")
            self._settle(claim, rejection)
            raise rejection

        logger.info(f"Claim accepted for ad {claim.ad_id}: reward {outcome.reward_amount}")
        self._settle(claim, outcome)
        return outcome

    def settled_result(self, session_nonce: str) -> Optional[Union[ClaimOutcome, Exception]]:
        """Result recorded for a nonce, or None if never settled."""
        with self._lock:
            return self._settled.get(session_nonce)

    def forget(self, session_nonce: str) -> None:
        """Drop the result for a nonce whose session has been discarded."""
        with self._lock:
            self._settled.pop(session_nonce, None)

    def _submit(self, claim: CompletionClaim, deadline: float) -> ClaimOutcome:
        """One ledger call, abandoned if still pending at the deadline."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise RetryDeadlineExceeded(f"No time left to submit nonce {claim.session_nonce[:8]}")

        with self._lock:
            self.attempts += 1

        result = {}
        done = threading.Event()

        def attempt():
            try:
                result["outcome"] = self.ledger.submit_completion(claim)
            except Exception as e:
                result["error"] = e
            finally:
                done.set()

        threading.Thread(target=attempt, daemon=True).start()
        if not done.wait(remaining):
            logger.error(f"Claim for ad {claim.ad_id} still pending at the {self.timeout:.1f}s ceiling")
            raise RetryDeadlineExceeded(f"Ledger did not answer within {self.timeout:.1f}s")

        if "error" in result:
            raise result["error"]
        return result["outcome"]

    def _settle(self, claim: CompletionClaim, result: Union[ClaimOutcome, Exception]) -> None:
        with self._lock:
            self._settled[claim.session_nonce] = result
            self._settled.move_to_end(claim.session_nonce)
            while len(self._settled) > SETTLED_CACHE_SIZE:
                self._settled.popitem(last=False)
