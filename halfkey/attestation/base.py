from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import ClassVar

from halfkey.metrics import increment_attestation_check
from halfkey.models.credentials import Credential
from halfkey.models.errors import AttestationFailure, AttestationRejected
from halfkey.models.requests import ProxyRequest, ValidationMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttestationOutcome:
    mode: ValidationMode
    bypassed: bool = False
    cors: bool = False


def bypass_matches(presented: str | None, expected: str | None) -> bool:
    """Constant-time bypass token comparison; an empty token never matches."""
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class AttestationVerifier(ABC):
    mode: ClassVar[ValidationMode]

    @abstractmethod
    async def verify(self, credential: Credential, request: ProxyRequest) -> AttestationOutcome:
        """Pass by returning an outcome; fail by raising ``AttestationFailure`` or ``AttestationRejected``."""

    async def close(self) -> None:
        return None


class AttestationRegistry:
    """Maps the inbound validation mode to exactly one verifier."""

    def __init__(self, verifiers: Iterable[AttestationVerifier]) -> None:
        self._verifiers: dict[ValidationMode, AttestationVerifier] = {}
        for verifier in verifiers:
            self._verifiers[verifier.mode] = verifier

    @property
    def modes(self) -> list[ValidationMode]:
        return list(self._verifiers)

    def select(self, mode: str | None) -> AttestationVerifier:
        try:
            parsed = ValidationMode((mode or "").strip())
        except ValueError:
            raise AttestationFailure(message="Validation mode not detected", code="invalid_validation_mode") from None
        verifier = self._verifiers.get(parsed)
        if verifier is None:
            raise AttestationFailure(message="Validation mode not detected", code="invalid_validation_mode")
        return verifier

    async def verify(self, credential: Credential, request: ProxyRequest) -> AttestationOutcome:
        try:
            verifier = self.select(request.validation_mode)
        except AttestationFailure:
            increment_attestation_check(mode=None, result="unknown_mode")
            raise

        mode = verifier.mode.value
        try:
            outcome = await verifier.verify(credential, request)
        except AttestationRejected:
            increment_attestation_check(mode=mode, result="rejected")
            logger.warning("attestation rejected", extra={"credential_id": credential.id, "mode": mode})
            raise
        except AttestationFailure:
            increment_attestation_check(mode=mode, result="failed")
            logger.warning("attestation failed", extra={"credential_id": credential.id, "mode": mode})
            raise

        increment_attestation_check(mode=mode, result="bypassed" if outcome.bypassed else "passed")
        return outcome

    async def close(self) -> None:
        for verifier in self._verifiers.values():
            await verifier.close()
