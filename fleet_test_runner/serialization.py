"""Serialization of result and hand-off documents."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel

M = TypeVar("M", bound=BaseModel)

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class ResultCodec:
    """JSON codec for the documents exchanged between processes and runs.

    Field names are camelCase and paths are absolute strings, as declared
    on the models themselves; the codec only controls the layout.
    """

    indent: int | None = 2

    def dumps(self, model: BaseModel) -> str:
        return model.model_dump_json(indent=self.indent)

    def loads(self, model_cls: type[M], text: str | bytes) -> M:
        """Parse a document.

        Raises:
            pydantic.ValidationError: If the document does not match the model

        """
        return model_cls.model_validate_json(text)

    def write(self, path: Path, model: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.dumps(model), encoding="utf-8")
        log.debug("Wrote %s", path)

    def read(self, model_cls: type[M], path: Path) -> M:
        """Read a document from disk.

        Raises:
            OSError: If the file cannot be read
            pydantic.ValidationError: If the document does not match the model

        """
        return self.loads(model_cls, path.read_text(encoding="utf-8"))
