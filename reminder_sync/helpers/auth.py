from datetime import timedelta
from http import HTTPStatus

import jwt
from fastapi import HTTPException

from reminder_sync.helpers.config_models.auth import AuthModel
from reminder_sync.helpers.monitoring import SpanAttributeEnum


def validate_bearer(
    authorization: str | None,
    config: AuthModel,
) -> str:
    """
    Validate a bearer JWT from the `Authorization` header.

    Token must be signed with the configured secret, and match the issuer and audience if configured.

    Returns the user id, read from the configured claim. Raises an `HTTPException` with a 401 status otherwise.
    """
    if not authorization:
        raise HTTPException(
            detail="Authorization header missing",
            status_code=HTTPStatus.UNAUTHORIZED,
        )

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            detail="Bearer token required",
            status_code=HTTPStatus.UNAUTHORIZED,
        )

    try:
        claims = jwt.decode(
            algorithms=[config.algorithm],
            audience=config.audience,
            issuer=config.issuer,
            jwt=token.strip(),
            key=config.secret.get_secret_value(),
            leeway=timedelta(seconds=30),  # Mitigate clock skew between services
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            detail="Invalid JWT token",
            status_code=HTTPStatus.UNAUTHORIZED,
        ) from e

    user_id = claims.get(config.user_claim)
    if not user_id:
        raise HTTPException(
            detail=f"Claim {config.user_claim} missing from token",
            status_code=HTTPStatus.UNAUTHORIZED,
        )

    # Enrich span
    SpanAttributeEnum.USER_ID.attribute(str(user_id))

    return str(user_id)
