from __future__ import annotations

import json
from typing import Any, Callable, Sequence


Pair = tuple[str, str]

ROOT_ARRAY_KEYS = ("segments", "translations", "results", "s")
TEXT_KEYS = (
    "text",
    "translation",
    "translated",
    "translatedText",
    "translated_text",
    "output",
    "result",
)
NON_TEXT_KEYS = {"id", "start", "end", "language"}
PREVIEW_CHARS = 400


class TranslationError(RuntimeError):
    pass


class ResponseParseError(TranslationError):
    def __init__(self, message: str, raw: str = "") -> None:
        self.preview = raw.strip()[:PREVIEW_CHARS]
        if self.preview:
            message = f"{message}\nraw (first {PREVIEW_CHARS} chars):\n{self.preview}"
        super().__init__(message)


class ResponseValidationError(TranslationError):
    pass


class MissingItemsError(TranslationError):
    pass


class EmptyResponseError(TranslationError):
    pass


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()[1:]
    body = "\n".join(lines)
    closing = body.rfind("```")
    if closing >= 0:
        body = body[:closing]
    return body.strip()


def _loads(text: str) -> Any | None:
    try:
        return json.loads(text)
    except ValueError:
        return None


def _load_json_value(raw: str) -> Any | None:
    text = strip_code_fence(raw)
    if not text:
        return None
    if (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]")):
        return _loads(text)

    # Prose around the document: try the outermost object, then the outermost array.
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = text.find(opener), text.rfind(closer)
        if start >= 0 and end > start:
            value = _loads(text[start : end + 1])
            if value is not None:
                return value
    return None


def _clean(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _pair_from_item(item: Any) -> Pair | None:
    if isinstance(item, list):
        if len(item) < 2:
            return None
        item_id, text = _clean(item[0]), _clean(item[1])
    elif isinstance(item, dict):
        item_id = _clean(item.get("id"))
        text = ""
        for key in TEXT_KEYS:
            text = _clean(item.get(key))
            if text:
                break
        if not text:
            for key, value in item.items():
                if key in NON_TEXT_KEYS or not isinstance(value, str):
                    continue
                text = value.strip()
                if text:
                    break
    else:
        return None

    if not item_id or not text:
        return None
    return item_id, text


def _pairs_from_document(value: Any) -> list[Pair] | None:
    if isinstance(value, list):
        items = value
    elif isinstance(value, dict):
        items = None
        for key in ROOT_ARRAY_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, list):
                items = candidate
                break
        if items is None:
            # A lone {"id": ..., "text": ...} object.
            single = _pair_from_item(value)
            return [single] if single else None
    else:
        return None

    pairs = [pair for pair in (_pair_from_item(item) for item in items) if pair]
    return pairs or None


def parse_strict_json(raw: str) -> list[Pair] | None:
    value = _load_json_value(raw)
    if value is None:
        return None
    return _pairs_from_document(value)


def salvage_truncated_json(raw: str) -> Any | None:
    """Close a document cut off after its last complete object.

    `{"segments": [{...}, {...}, {"id": "x", "te` becomes
    `{"segments": [{...}, {...}]}`.
    """
    text = strip_code_fence(raw)
    if not text or text[0] not in "{[":
        return None

    last_obj_end = text.rfind("}")
    if text[0] == "{":
        if last_obj_end < 0:
            return None
        prefix = text[: last_obj_end + 1].rstrip()
        if "[" in prefix:
            value = _loads(prefix + "\n  ]\n}")
            if value is not None:
                return value
        return _loads(prefix + "\n}")

    # Array root: items are objects, or [id, text] pairs closed by "]".
    for item_end in (last_obj_end, text.rfind("]")):
        if item_end <= 0:
            continue
        value = _loads(text[: item_end + 1].rstrip() + "\n]")
        if value is not None:
            return value
    return None


def parse_salvaged_json(raw: str) -> list[Pair] | None:
    value = salvage_truncated_json(raw)
    if value is None:
        return None
    return _pairs_from_document(value)


def parse_ndjson(raw: str) -> list[Pair] | None:
    pairs: list[Pair] = []
    for line in strip_code_fence(raw).splitlines():
        stripped = line.strip().rstrip(",")
        if not stripped:
            continue
        if not stripped.startswith(("{", "[")):
            start, end = stripped.find("{"), stripped.rfind("}")
            if start < 0 or end <= start:
                continue
            stripped = stripped[start : end + 1]
        value = _loads(stripped)
        if value is None:
            continue
        pair = _pair_from_item(value)
        if pair:
            pairs.append(pair)
    return pairs or None


ParseStrategy = Callable[[str], list[Pair] | None]

STRATEGIES: tuple[tuple[str, ParseStrategy], ...] = (
    ("strict_json", parse_strict_json),
    ("salvaged_json", parse_salvaged_json),
    ("ndjson", parse_ndjson),
)


def parse_translation_pairs_with_strategy(raw: str) -> tuple[str, list[Pair]]:
    if not raw or not raw.strip():
        raise ResponseParseError("translate output missing JSON (empty response)")

    for name, strategy in STRATEGIES:
        pairs = strategy(raw)
        if pairs:
            return name, pairs

    raise ResponseParseError("translate output missing JSON", raw)


def parse_translation_pairs(raw: str) -> list[Pair]:
    _name, pairs = parse_translation_pairs_with_strategy(raw)
    return pairs


def _script_ranges(target_lang: str) -> tuple[tuple[int, int], ...] | None:
    lang = target_lang.strip().lower()
    han = (0x4E00, 0x9FFF)
    if lang.startswith("zh"):
        return (han,)
    if lang.startswith("ja"):
        return (han, (0x3040, 0x309F), (0x30A0, 0x30FF))
    if lang.startswith("ko"):
        return ((0xAC00, 0xD7AF), (0x1100, 0x11FF))
    return None


def has_target_script(text: str, target_lang: str) -> bool:
    ranges = _script_ranges(target_lang)
    if ranges is None:
        return True
    return any(low <= ord(ch) <= high for ch in text for low, high in ranges)


def validate_translation_pairs(
    pairs: Sequence[Pair],
    target_lang: str,
    expected_count: int,
    *,
    min_expected: int = 3,
) -> None:
    if _script_ranges(target_lang) is None or expected_count < min_expected:
        return
    if any(has_target_script(text, target_lang) for _id, text in pairs):
        return
    raise ResponseValidationError(f"translate output does not look like {target_lang}")
