from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ResponseModel(BaseModel, Generic[T]):
    data: T | None = None
    message: str
    success: bool = True


class ErrorModel(BaseModel):
    errors: list[Any] = []
    message: str
    success: bool = False
