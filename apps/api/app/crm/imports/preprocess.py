from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from app.core.config import get_settings


logger = logging.getLogger("app.crm.imports")

_TRAILING_NEWLINES_RE = re.compile(r"\n+$")


class ContentTooLargeError(ValueError):
    def __init__(self, content_chars: int, max_chars: int) -> None:
        self.content_chars = content_chars
        self.max_chars = max_chars
        super().__init__(
            f"File content is too large ({round(content_chars / 1000)}K chars). "
            f"Maximum is {max_chars // 1000}K characters. Try a smaller file or export fewer records."
        )


@dataclass(frozen=True)
class PreprocessedContent:
    cleaned: str
    detected_headers: str | None
    was_truncated: bool

    def truncation_warning(self, max_rows: int) -> str | None:
        if not self.was_truncated:
            return None
        return f"File was truncated to its first {max_rows} data rows before parsing."


def ensure_content_size(content: str, max_chars: int | None = None) -> None:
    limit = max_chars if max_chars is not None else get_settings().import_max_content_chars
    if len(content) > limit:
        raise ContentTooLargeError(len(content), limit)


def preprocess_content(
    content: str,
    file_type: str,
    *,
    truncation_threshold: int | None = None,
    max_rows: int | None = None,
) -> PreprocessedContent:
    settings = get_settings()
    threshold = truncation_threshold if truncation_threshold is not None else settings.import_truncation_threshold_chars
    row_cap = max_rows if max_rows is not None else settings.import_max_rows

    cleaned = content.removeprefix("\ufeff")
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _TRAILING_NEWLINES_RE.sub("\n", cleaned)

    detected_headers: str | None = None
    was_truncated = False

    if file_type == "csv":
        lines = cleaned.split("\n")
        non_empty = [line for line in lines if line.strip()]
        if non_empty:
            detected_headers = non_empty[0].strip()

        if len(cleaned) > threshold and len(non_empty) > row_cap + 1:
            cleaned = "\n".join(non_empty[: row_cap + 1]) + "\n"
            was_truncated = True
            logger.warning(
                "import.preprocess.truncated",
                extra={"content_chars": len(content), "row_count": len(non_empty)},
            )

    return PreprocessedContent(cleaned=cleaned, detected_headers=detected_headers, was_truncated=was_truncated)
