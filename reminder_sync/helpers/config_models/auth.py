from pydantic import BaseModel, SecretStr


class AuthModel(BaseModel, frozen=True):
    algorithm: str = "HS256"
    audience: str | None = None
    issuer: str | None = None
    secret: SecretStr
    user_claim: str = "userId"
