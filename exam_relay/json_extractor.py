"""
Best-effort recovery of a JSON object from model output.

Models asked for "JSON only" still wrap it in markdown fences, add prose,
leave raw newlines inside strings or forget to escape quotes. ``extract_json``
runs these stages in order and returns the first success:

1. strip leading/trailing code fences
2. strict parse of the cleaned text
3. strict parse of the first ``{`` .. last ``}`` span
4. escape raw newlines, carriage returns and tabs inside string values
5. escape stray quotes and backslashes inside string values, drop ``\\r``
6. salvage the caller's known fields one by one with regexes (needs >= 2)

Only a stage-2 or stage-3 success is returned for input that is already valid,
so well-formed JSON is never rewritten. The extractor knows nothing about
field domains; callers clamp numbers themselves.
"""
import re
import json
import logging
from typing import Any, Dict, Iterable, Optional, Sequence

from .errors import ExtractionError

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^\s*```[\w-]*[ \t]*\r?\n?")
_FENCE_CLOSE = re.compile(r"\r?\n?[ \t]*```\s*$")

_KEY = r'"[^"\\\r\n]+"'

# key: "value" where the value ends at a quote followed by , } or ]
_PAIR_LOOSE = re.compile(r"(%s\s*:\s*\")(.*?)\"(?=\s*[,}\]])" % _KEY, re.DOTALL)
# same, but the closing quote must be followed by the next key or a closing bracket
_PAIR_STRICT = re.compile(
    r"(%s\s*:\s*\")(.*?)\"(?=\s*(?:,\s*%s\s*:|[}\]]))" % (_KEY, _KEY), re.DOTALL
)

_ESCAPE_UNIT = re.compile(r'\\(["\\/bfnrtu])|\\|"')
_CONTROL_CHAR = re.compile(r"[\x00-\x1f]")
_ESCAPE_SEQ = re.compile(r'\\(["\\/nrt])')
_UNESCAPES = {'"': '"', "\\": "\\", "/": "/", "n": "\n", "r": "\r", "t": "\t"}

MIN_SALVAGED_FIELDS = 2


def strip_code_fences(text: str) -> str:
    text = _FENCE_OPEN.sub("", text, count=1)
    text = _FENCE_CLOSE.sub("", text, count=1)
    return text.strip()


def parse_strict(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """json.loads that returns None instead of raising, and only accepts objects."""
    if not text:
        return None
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def isolate_object(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def escape_control_characters(candidate: str) -> str:
    def fix(match):
        value = match.group(2).replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
        return match.group(1) + value + '"'

    return _PAIR_LOOSE.sub(fix, candidate)


def _escape_unit(match) -> str:
    # valid escape pairs are kept; lone backslashes and bare quotes get escaped
    if match.group(1) is not None:
        return match.group(0)
    return "\\\\" if match.group(0) == "\\" else '\\"'


def _escape_value(value: str) -> str:
    value = _ESCAPE_UNIT.sub(_escape_unit, value)
    value = value.replace("\r", "").replace("\n", "\\n").replace("\t", "\\t")
    return _CONTROL_CHAR.sub(lambda m: "\\u%04x" % ord(m.group()), value)


def repair_quotes(candidate: str) -> str:
    return _PAIR_STRICT.sub(lambda m: m.group(1) + _escape_value(m.group(2)) + '"', candidate)


def _unescape(value: str) -> str:
    return _ESCAPE_SEQ.sub(lambda m: _UNESCAPES[m.group(1)], value)


def _number(raw: str):
    return float(raw) if "." in raw else int(raw)


def salvage_fields(text: str, fields: Iterable[str]) -> Optional[Dict[str, Any]]:
    """Pull known fields out of broken JSON. Returns None unless at least two were found."""
    recovered = {}
    for name in fields:
        key = re.escape(name)
        string_match = re.search(
            r'"%s"\s*:\s*"(.*?)"\s*(?=,\s*%s\s*:|[}\]]|\Z)' % (key, _KEY), text, re.DOTALL
        )
        if string_match:
            recovered[name] = _unescape(string_match.group(1))
            continue
        number_match = re.search(r'"%s"\s*:\s*(-?\d+(?:\.\d+)?)(?![\d.])' % key, text)
        if number_match:
            recovered[name] = _number(number_match.group(1))
    if len(recovered) < MIN_SALVAGED_FIELDS:
        return None
    return recovered


def _direct(cleaned, candidate, fields):
    return parse_strict(cleaned)


def _isolated(cleaned, candidate, fields):
    return parse_strict(candidate)


def _control_chars(cleaned, candidate, fields):
    return parse_strict(escape_control_characters(candidate)) if candidate else None


def _quotes(cleaned, candidate, fields):
    return parse_strict(repair_quotes(candidate)) if candidate else None


def _salvage(cleaned, candidate, fields):
    return salvage_fields(cleaned, fields) if fields else None


STAGES = (
    ("direct", _direct),
    ("isolated", _isolated),
    ("control-chars", _control_chars),
    ("quotes", _quotes),
    ("salvage", _salvage),
)


def extract_json(text: str, fields: Sequence[str] = ()) -> Dict[str, Any]:
    """
    Recover a JSON object from ``text``.

    Args:
        text: raw model output
        fields: names the caller expects; only used by the salvage stage

    Raises:
        ExtractionError: when every stage fails
    """
    cleaned = strip_code_fences(text or "")
    candidate = isolate_object(cleaned)

    for name, stage in STAGES:
        result = stage(cleaned, candidate, fields)
        if result is not None:
            logger.debug("JSON extracted at stage %s", name)
            return result

    preview = cleaned[:200]
    logger.warning("Model output is not recoverable JSON: %r", preview)
    raise ExtractionError(preview=preview)
