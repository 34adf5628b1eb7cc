"""Question bank and test-type catalogue loading.

Both files are read once at startup. Anything malformed raises
:class:`BankLoadError` so the service refuses to start instead of serving
sessions from a partial catalogue.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import TypeAdapter, ValidationError

from .errors import BankLoadError
from .models import QuestionItem, TestType

logger = logging.getLogger(__name__)

_questions_adapter = TypeAdapter(List[QuestionItem])
_test_types_adapter = TypeAdapter(List[TestType])


def _read_json(path: Path, what: str):
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise BankLoadError(f"Could not read {what} file {path}: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BankLoadError(f"Could not parse {what} file {path}: {exc}") from exc


class QuestionBank:
    """Immutable, ordered catalogue of questions.

    The items themselves are shared with the allocator, which is the only
    component allowed to touch their ``reserved_by`` flag.
    """

    def __init__(self, items: List[QuestionItem]):
        seen: set[int] = set()
        for item in items:
            if item.id in seen:
                raise BankLoadError(f"Duplicate question id {item.id}")
            seen.add(item.id)
            item.reserved_by = ""
            if len(item.options) < 2:
                raise BankLoadError(f"Question {item.id} needs at least two options")
            if not 0 <= item.answer < len(item.options):
                raise BankLoadError(
                    f"Question {item.id} answer index {item.answer} is out of range"
                )
        self._items = list(items)
        self._by_id = {item.id: item for item in self._items}

    @classmethod
    def from_file(cls, path: str | Path) -> "QuestionBank":
        path = Path(path)
        data = _read_json(path, "question bank")
        try:
            items = _questions_adapter.validate_python(data)
        except ValidationError as exc:
            raise BankLoadError(f"Invalid question bank {path}: {exc}") from exc
        bank = cls(items)
        logger.info("Loaded %d questions from %s", len(bank), path)
        return bank

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[QuestionItem]:
        return iter(self._items)

    def get(self, question_id: int) -> Optional[QuestionItem]:
        return self._by_id.get(question_id)

    def categories(self) -> List[str]:
        return sorted({item.category for item in self._items if item.category})


def load_test_types(path: str | Path) -> Dict[str, TestType]:
    """Return the test-type catalogue keyed by type; a missing file means none."""
    path = Path(path)
    if not path.exists():
        logger.info("No test type catalogue at %s, using configured defaults", path)
        return {}
    data = _read_json(path, "test type")
    try:
        types = _test_types_adapter.validate_python(data)
    except ValidationError as exc:
        raise BankLoadError(f"Invalid test type catalogue {path}: {exc}") from exc
    return {t.type: t for t in types}
