"""Signature verification for submitted intents."""

import logging
from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct

from intentx.errors import InvalidSignature

logger = logging.getLogger(__name__)


class SignatureVerifier(Protocol):
    """Recovers the signer of a canonical message."""

    def verify(self, canonical_message: str, signature: str) -> str:
        """Return the signer identity.

        Raises:
            InvalidSignature: If the signature is malformed or does not recover.
        """
        ...


class EthSignatureVerifier:
    """EIP-191 personal_sign verification (what wallets produce for `signMessage`)."""

    def verify(self, canonical_message: str, signature: str) -> str:
        if not signature or not isinstance(signature, str):
            raise InvalidSignature("Signature is required")
        sig = signature if signature.startswith("0x") else f"0x{signature}"
        # 65 bytes: r(32) + s(32) + v(1)
        if len(sig) != 132:
            raise InvalidSignature("Invalid signature format")
        try:
            message = encode_defunct(text=canonical_message)
            return Account.recover_message(message, signature=sig)
        except Exception as e:
            logger.debug(f"Signature recovery failed: {e}")
            raise InvalidSignature("Invalid signature") from e


def sign_canonical_message(canonical_message: str, private_key: str) -> str:
    """Sign a canonical message the way a browser wallet would.

    Used by the `dev sign` CLI command and tests.
    """
    signed = Account.sign_message(encode_defunct(text=canonical_message), private_key=private_key)
    sig = signed.signature.hex()
    return sig if sig.startswith("0x") else f"0x{sig}"
