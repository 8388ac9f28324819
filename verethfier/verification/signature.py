"""EIP-712 typed-data signature verification.

The signed structure is a contract with wallet clients and must be
reproduced exactly::

    domain  {name: "Verethfier", version: "1", chainId: 1}
    Verification(address address, string userId, string discordId,
                 string nonce, uint256 expiry)
"""

from __future__ import annotations

import logging
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data

from verethfier.core.clock import Clock, system_clock
from verethfier.core.errors import SignatureError
from verethfier.core.types import VerificationPayload

logger = logging.getLogger(__name__)

PRIMARY_TYPE = "Verification"

DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
]

VERIFICATION_FIELDS = [
    {"name": "address", "type": "address"},
    {"name": "userId", "type": "string"},
    {"name": "discordId", "type": "string"},
    {"name": "nonce", "type": "string"},
    {"name": "expiry", "type": "uint256"},
]


class SignatureVerifier:
    def __init__(
        self,
        domain_name: str = "Verethfier",
        domain_version: str = "1",
        chain_id: int = 1,
        clock: Clock = system_clock,
    ) -> None:
        self.domain = {"name": domain_name, "version": domain_version, "chainId": chain_id}
        self._clock = clock

    def build_typed_data(self, payload: VerificationPayload) -> dict[str, Any]:
        """Full EIP-712 message for ``payload``; clients sign exactly this."""
        return {
            "types": {
                "EIP712Domain": DOMAIN_FIELDS,
                PRIMARY_TYPE: VERIFICATION_FIELDS,
            },
            "primaryType": PRIMARY_TYPE,
            "domain": dict(self.domain),
            "message": {
                "address": payload.address.lower(),
                "userId": payload.user_id,
                "discordId": payload.discord_id,
                "nonce": payload.nonce,
                "expiry": payload.expiry,
            },
        }

    def verify(self, payload: VerificationPayload, signature: str) -> str:
        """Return the lower-cased signer address, or raise ``SignatureError``."""
        if payload.expiry < self._clock.timestamp():
            raise SignatureError("Verification has expired")

        try:
            signable = encode_typed_data(full_message=self.build_typed_data(payload))
            recovered = Account.recover_message(signable, signature=signature)
        except Exception as exc:
            # eth_account raises a mix of ValueError, TypeError and eth-keys errors
            logger.debug("Signature recovery failed: %s", exc)
            raise SignatureError("Malformed signature") from exc

        recovered = recovered.lower()
        if recovered != payload.address.lower():
            logger.info(
                "Signature signer mismatch for user %s",
                payload.user_id,
                extra={"address": payload.address.lower()},
            )
            raise SignatureError("Signature does not match address")
        return recovered
