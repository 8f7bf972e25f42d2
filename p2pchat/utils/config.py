"""TOML files backed by Pydantic models."""
from __future__ import annotations

import pathlib
import sys
from typing import TypeVar

import tomli_w
from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

ModelT = TypeVar('ModelT', bound=BaseModel)


def parse_toml(model: type[ModelT], data: str) -> ModelT:
    """Validate a TOML document against a model.

    Raises:
        tomllib.TOMLDecodeError: If `data` is not valid TOML.
        pydantic.ValidationError: If the document does not match `model`.
    """
    return model.model_validate(tomllib.loads(data))


def read_toml(model: type[ModelT], filepath: str | pathlib.Path) -> ModelT:
    """Read a TOML file and validate it against a model."""
    with open(filepath, 'rb') as f:
        return model.model_validate(tomllib.load(f))


def to_toml(model: BaseModel, *, exclude_none: bool = True) -> str:
    """Render a model as a TOML document.

    TOML has no null value so `None` fields are omitted by default.
    """
    return tomli_w.dumps(model.model_dump(exclude_none=exclude_none))


def write_toml(
    model: BaseModel,
    filepath: str | pathlib.Path,
    *,
    exclude_none: bool = True,
) -> None:
    """Write a model to a TOML file."""
    with open(filepath, 'wb') as f:
        tomli_w.dump(model.model_dump(exclude_none=exclude_none), f)
