"""HMAC signature verification for n8n callbacks.

n8n signs the raw callback body with the shared secret and sends
``sha256=<hex digest>`` in the ``X-N8N-Signature`` header. Nothing reads or
writes the task before the signature has been verified.
"""

import hashlib
import hmac
import logging

from fastapi import HTTPException, Request, status

from ad_refactor.exceptions import InvalidSignatureError, MissingSecretError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-N8N-Signature"
SIGNATURE_SCHEME = "sha256="


class CallbackAuthenticator:
    """Verifies callback signatures against a shared secret.

    Attributes:
        header_name: Request header carrying the signature
    """

    def __init__(self, secret: str | None, header_name: str = SIGNATURE_HEADER) -> None:
        self._secret = secret or ""
        self.header_name = header_name

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def sign(self, body: bytes) -> str:
        """Compute the signature header value for a body.

        Raises:
            MissingSecretError: If no secret is configured
        """
        if not self._secret:
            raise MissingSecretError()
        digest = hmac.new(self._secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return f"{SIGNATURE_SCHEME}{digest}"

    def verify(self, body: bytes, signature: str | None) -> None:
        """Check a signature against the raw body.

        Args:
            body: Raw request body, exactly as received
            signature: Value of the signature header

        Raises:
            MissingSecretError: Secret not configured (server error)
            InvalidSignatureError: Signature missing or wrong (client error)
        """
        expected = self.sign(body)

        if not signature:
            raise InvalidSignatureError("Missing webhook signature")

        # Constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            raise InvalidSignatureError("Invalid webhook signature")


async def verify_webhook_signature(request: Request) -> bytes:
    """FastAPI dependency guarding the callback endpoint.

    Returns:
        The verified raw body

    Raises:
        HTTPException: 500 if the secret is not configured, 401 if the
            signature is missing or invalid
    """
    authenticator: CallbackAuthenticator = request.app.state.authenticator
    body = await request.body()

    try:
        authenticator.verify(body, request.headers.get(authenticator.header_name))
    except MissingSecretError as e:
        logger.error("Rejecting callback: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message
        ) from e
    except InvalidSignatureError as e:
        audit = getattr(request.app.state, "audit", None)
        if audit is not None:
            audit.log_security_event(
                "invalid_signature",
                {"path": request.url.path, "reason": e.message},
            )
        logger.warning("Rejecting callback: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message) from e

    return body
