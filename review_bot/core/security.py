import hashlib
import hmac

from fastapi import Header, HTTPException, Request, status

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(raw_body: bytes, provided_signature: str | None, secret: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` value against the raw request body.

    The comparison is constant time. Absent, malformed or mismatched signatures
    return False rather than raising.
    """
    if not secret or not provided_signature:
        return False
    if not provided_signature.startswith(SIGNATURE_PREFIX):
        return False

    expected = compute_signature(raw_body, secret)
    try:
        provided = provided_signature.encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), provided)


async def require_admin_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    settings = request.app.state.settings
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin API key is not configured",
        )
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"admin endpoints require {settings.admin_api_key_header}",
        )

    expected_hash = hashlib.sha256(settings.admin_api_key.encode("utf-8")).hexdigest()
    provided_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    if not hmac.compare_digest(expected_hash, provided_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin API key")
