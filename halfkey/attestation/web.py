from __future__ import annotations

from halfkey.attestation.base import AttestationOutcome, AttestationVerifier
from halfkey.models.credentials import Credential
from halfkey.models.errors import AttestationFailure
from halfkey.models.requests import ProxyRequest, ValidationMode


class WebVerifier(AttestationVerifier):
    """Browser traffic cannot attest; it is allowed only for keys opted into web use."""

    mode = ValidationMode.WEB

    async def verify(self, credential: Credential, request: ProxyRequest) -> AttestationOutcome:
        if not credential.allows_web:
            raise AttestationFailure(message="Web requests are not enabled for this key", code="web_not_allowed")
        return AttestationOutcome(mode=self.mode, cors=True)
