"""Reading values out of a pod by field path, as webhook parameters use them."""

from __future__ import annotations

import json
import re
import uuid
from typing import Any, Optional

from transitionrule.models import Pod

_NAME_PART = re.compile(r"([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]")
_DNS1123_SUBDOMAIN = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*")
_NAME_MAX = 63
_PREFIX_MAX = 253

_NAME_FORMAT_MSG = (
    "name part must consist of alphanumeric characters, '-', '_' or '.', "
    "and must start and end with an alphanumeric character"
)
_PREFIX_FORMAT_MSG = (
    "prefix part a lowercase RFC 1123 subdomain must consist of lower case "
    "alphanumeric characters, '-' or '.', and must start and end with an "
    "alphanumeric character"
)
_QUALIFIED_FORMAT_MSG = (
    "a qualified name must consist of alphanumeric characters, '-', '_' or '.', "
    "and must start and end with an alphanumeric character, with an optional "
    "DNS subdomain prefix and '/'"
)

_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
}


def _qualified_name_errors(value: str) -> list[str]:
    parts = value.split("/")
    if len(parts) == 1:
        name = parts[0]
        errors: list[str] = []
    elif len(parts) == 2:
        prefix, name = parts
        errors = []
        if not prefix:
            errors.append("prefix part must be non-empty")
        else:
            if len(prefix) > _PREFIX_MAX:
                errors.append(f"prefix part must be no more than {_PREFIX_MAX} characters")
            if not _DNS1123_SUBDOMAIN.fullmatch(prefix):
                errors.append(_PREFIX_FORMAT_MSG)
    else:
        return [_QUALIFIED_FORMAT_MSG]

    if not name:
        errors.append("name part must be non-empty")
    elif len(name) > _NAME_MAX:
        errors.append(f"name part must be no more than {_NAME_MAX} characters")
    if name and not _NAME_PART.fullmatch(name):
        errors.append(_NAME_FORMAT_MSG)
    return errors


def _quote(text: str) -> str:
    out = []
    for ch in text:
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ch.isprintable():
            out.append(ch)
        elif ord(ch) < 0x80:
            out.append(f"\\x{ord(ch):02x}")
        elif ord(ch) <= 0xFFFF:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(f"\\U{ord(ch):08x}")
    return '"' + "".join(out) + '"'


def split_maybe_subscripted_path(field_path: str) -> tuple[str, str, bool]:
    """Split "path['key']" into (path, key, True); otherwise (field_path, "", False)."""
    if not field_path.endswith("']"):
        return field_path, "", False
    parts = field_path[: -len("']")].split("['", 1)
    if len(parts) < 2 or not parts[0]:
        return field_path, "", False
    return parts[0], parts[1], True


def format_map(mapping: Optional[dict]) -> str:
    """Render a string map as sorted key="value" lines."""
    return "\n".join(f"{key}={_quote(mapping[key])}" for key in sorted(mapping or {}))


def extract_field_path_as_string(pod: Pod, field_path: str) -> str:
    """Resolve the metadata field paths that have a string form.

    Raises ValueError for unsupported paths and invalid subscripts.
    """
    path, subscript, subscripted = split_maybe_subscripted_path(field_path)
    if subscripted:
        if path == "metadata.annotations":
            errors = _qualified_name_errors(subscript.lower())
            if errors:
                raise ValueError(f"invalid key subscript in {field_path}: {';'.join(errors)}")
            return pod.annotations.get(subscript, "")
        if path == "metadata.labels":
            errors = _qualified_name_errors(subscript)
            if errors:
                raise ValueError(f"invalid key subscript in {field_path}: {';'.join(errors)}")
            return pod.labels.get(subscript, "")
        raise ValueError(f"fieldPath {field_path!r} does not support subscript")

    if field_path == "metadata.annotations":
        return format_map(pod.annotations)
    if field_path == "metadata.labels":
        return format_map(pod.labels)
    if field_path == "metadata.name":
        return pod.name
    if field_path == "metadata.namespace":
        return pod.namespace
    if field_path == "metadata.uid":
        return pod.uid
    raise ValueError(f"unsupported fieldPath: {field_path}")


def get_field_ref(pod: Pod, field_ref: str) -> Any:
    """Walk a dotted path through the pod's JSON form; None when the leaf is absent.

    Raises ValueError when a non-final step is not an object.
    """
    raw = pod.to_dict()
    *parents, leaf = field_ref.split(".")
    for part in parents:
        child = raw.get(part)
        if not isinstance(child, dict):
            raise ValueError(f"field {part!r} of {field_ref!r} is not an object")
        raw = child
    return raw.get(leaf)


def extract_value_from_pod(pod: Pod, key: str, field_path: str) -> str:
    """Value of a parameter taken from the pod; non-strings come back as JSON."""
    try:
        return extract_field_path_as_string(pod, field_path)
    except ValueError:
        pass
    try:
        value = get_field_ref(pod, field_path)
    except ValueError as exc:
        raise ValueError(f"fail to parse parameter {key} by field ref: {exc}") from exc
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def new_trace() -> str:
    """A fresh random trace id."""
    return str(uuid.uuid4())