"""Base model configuration for all data structures."""

from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel


class Model(BaseModel):
    """Base model with standard configuration.

    Instances are frozen and serialize with camelCase field names so that
    result documents keep a stable wire schema.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        validate_by_name=True,
        validate_by_alias=True,
        serialize_by_alias=True,
    )


AbsolutePath = Annotated[
    Path,
    PlainSerializer(lambda path: str(path.absolute()), return_type=str),
]
