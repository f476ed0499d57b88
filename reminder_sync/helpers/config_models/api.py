from pydantic import BaseModel, Field, ValidationInfo, field_validator


class ApiModel(BaseModel):
    default_limit: int = Field(default=20, ge=1)
    max_limit: int = Field(default=100, ge=1)
    root_path: str = ""

    @field_validator("max_limit")
    @classmethod
    def _validate_max_limit(cls, max_limit: int, info: ValidationInfo) -> int:
        if max_limit < info.data.get("default_limit", 1):
            raise ValueError("max_limit must be greater than default_limit")
        return max_limit
