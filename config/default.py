import os
import abc
import enum
from typing import Generic, TypeVar
from pathlib import Path

from pydantic import BaseModel

T = TypeVar("T")


class EnvironmentEnum(str, enum.Enum):
    local = "local"
    development = "development"
    test = "test"
    production = "production"


ENVIRONMENT = os.environ.get(
    "environment",  # noqa
    EnvironmentEnum.local.value,
)

BASE_DIR = Path(__file__).resolve().parent.parent


class ProjectConfig(BaseModel):
    unique_code: str
    debug: bool = False
    environment: EnvironmentEnum = EnvironmentEnum(ENVIRONMENT)


class ExtensionConfig(BaseModel): ...


class InstanceExtensionConfig(ExtensionConfig, Generic[T]):

    @property
    @abc.abstractmethod
    def instance(self) -> T: ...


class RegisterExtensionConfig(ExtensionConfig):

    @abc.abstractmethod
    async def register(self) -> None: ...

    @abc.abstractmethod
    async def unregister(self) -> None: ...
