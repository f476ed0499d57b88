from enum import Enum

from pydantic import BaseModel


class ReadinessEnum(str, Enum):
    FAIL = "fail"
    """The service is not ready."""
    OK = "ok"
    """The service is ready."""


class ReadinessCheckModel(BaseModel):
    id: str
    status: ReadinessEnum


class ReadinessModel(BaseModel):
    checks: list[ReadinessCheckModel]
    status: ReadinessEnum

    @classmethod
    def from_checks(cls, **checks: ReadinessEnum) -> "ReadinessModel":
        """
        Aggregate component checks, keyed by component name.

        The service is ready only if every component is.
        """
        return cls(
            checks=[
                ReadinessCheckModel(id=name, status=status)
                for name, status in checks.items()
            ],
            status=(
                ReadinessEnum.OK
                if all(status == ReadinessEnum.OK for status in checks.values())
                else ReadinessEnum.FAIL
            ),
        )
