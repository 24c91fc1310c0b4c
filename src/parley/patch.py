"""Runtime request overrides.

A ``RequestPatch`` rewrites an outgoing request just before it leaves the
adapter, in a fixed order: url, body merge, headers, field removals. Patches
are validated when constructed so a bad config fails at startup, not mid-call.
Applying a patch never mutates its inputs, so one patch can serve every call
of an adapter.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any

from parley.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

#: Deepest object nesting a body fragment may have.
MAX_PATCH_DEPTH = 64

_PATCH_KEYS = frozenset({"url", "body", "headers", "remove_fields"})


@dataclass(frozen=True)
class PatchedRequest:
    """Outgoing request after a patch was applied."""

    body: dict[str, Any]
    headers: dict[str, str]
    url: str


@dataclass(frozen=True)
class RequestPatch:
    """URL/body/header/removal overrides for one adapter.

    ``headers`` maps a name to its new value, or to ``None`` to drop the
    header. ``remove_fields`` holds dot-delimited paths; numeric segments index
    into lists.
    """

    url: str | None = None
    body: dict[str, Any] | None = None
    headers: dict[str, str | None] | None = None
    remove_fields: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.url is not None and not isinstance(self.url, str):
            raise ConfigurationError("patch url must be a string", field="patch.url")
        if self.body is not None:
            if not isinstance(self.body, dict):
                raise ConfigurationError(
                    "patch body must be a JSON object", field="patch.body"
                )
            if _object_depth(self.body) > MAX_PATCH_DEPTH:
                raise ConfigurationError(
                    f"patch body nests deeper than {MAX_PATCH_DEPTH} levels",
                    field="patch.body",
                )
        if self.headers is not None:
            for name, value in self.headers.items():
                if not isinstance(name, str) or not name:
                    raise ConfigurationError(
                        "patch header names must be non-empty strings",
                        field="patch.headers",
                    )
                if value is not None and not isinstance(value, str):
                    raise ConfigurationError(
                        f"patch header {name!r} must be a string or null",
                        field="patch.headers",
                    )
        if isinstance(self.remove_fields, str):
            raise ConfigurationError(
                "remove_fields must be a list of paths, not a string",
                field="patch.remove_fields",
            )
        object.__setattr__(self, "remove_fields", tuple(self.remove_fields))
        for path in self.remove_fields:
            _split_path(path)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RequestPatch:
        """Build a patch from already-parsed configuration data."""
        unknown = set(data) - _PATCH_KEYS
        if unknown:
            raise ConfigurationError(
                f"unknown patch field(s): {', '.join(sorted(unknown))}",
                field="patch",
                hint=f"Allowed fields: {', '.join(sorted(_PATCH_KEYS))}.",
            )
        headers = data.get("headers")
        return cls(
            url=data.get("url"),
            body=data.get("body"),
            headers=dict(headers) if headers is not None else None,
            remove_fields=tuple(data.get("remove_fields") or ()),
        )

    @property
    def is_empty(self) -> bool:
        return (
            self.url is None
            and not self.body
            and not self.headers
            and not self.remove_fields
        )

    def apply(
        self, body: Mapping[str, Any], headers: Mapping[str, str], url: str
    ) -> PatchedRequest:
        return apply_patch(body, headers, url, self)


def apply_patch(
    body: Mapping[str, Any],
    headers: Mapping[str, str],
    url: str,
    patch: RequestPatch,
) -> PatchedRequest:
    """Return a new request with *patch* applied; inputs are left untouched."""
    new_url = patch.url if patch.url is not None else url

    new_body: Any = copy.deepcopy(dict(body))
    if patch.body is not None:
        new_body = _merge(new_body, patch.body, 0)

    new_headers = dict(headers)
    for name, value in (patch.headers or {}).items():
        lowered = name.lower()
        for existing in [k for k in new_headers if k.lower() == lowered]:
            del new_headers[existing]
        if value is not None:
            new_headers[name] = value

    if patch.remove_fields:
        _remove_all(new_body, patch.remove_fields)

    logger.debug(
        "Applied request patch (url=%s, body_keys=%d, headers=%d, removals=%d)",
        patch.url is not None,
        len(patch.body or {}),
        len(patch.headers or {}),
        len(patch.remove_fields),
    )
    return PatchedRequest(body=new_body, headers=new_headers, url=new_url)


def deep_merge(original: Any, fragment: Any) -> Any:
    """Merge *fragment* into a copy of *original*.

    Objects merge key by key; anything else in *fragment* (scalars, lists,
    null) replaces the original value wholesale.
    """
    return _merge(copy.deepcopy(original), fragment, 0)


def remove_path(doc: Any, path: str) -> Any:
    """Return a copy of *doc* without the value at dotted *path*.

    Missing keys, out-of-range indices and non-numeric segments on lists are
    no-ops. Removing a list element shifts later elements down.
    """
    result = copy.deepcopy(doc)
    _remove_in_place(result, _split_path(path))
    return result


def _merge(base: Any, fragment: Any, depth: int) -> Any:
    if depth > MAX_PATCH_DEPTH:
        raise ConfigurationError(
            f"patch body nests deeper than {MAX_PATCH_DEPTH} levels",
            field="patch.body",
        )
    if not (isinstance(base, dict) and isinstance(fragment, dict)):
        return copy.deepcopy(fragment)
    for key, value in fragment.items():
        if key in base:
            base[key] = _merge(base[key], value, depth + 1)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _object_depth(value: Any) -> int:
    depth = 0
    stack: list[tuple[Any, int]] = [(value, 1)]
    while stack:
        node, level = stack.pop()
        if isinstance(node, dict):
            depth = max(depth, level)
            stack.extend((child, level + 1) for child in node.values())
    return depth


def _split_path(path: Any) -> list[str]:
    if not isinstance(path, str) or not path:
        raise ConfigurationError(
            f"invalid removal path: {path!r}", field="patch.remove_fields"
        )
    segments = path.split(".")
    if any(not s for s in segments):
        raise ConfigurationError(
            f"invalid removal path: {path!r} (empty segment)",
            field="patch.remove_fields",
        )
    return segments


def _remove_all(doc: Any, paths: tuple[str, ...]) -> None:
    """Apply removals in order, batching index removals on the same list.

    Paths that end in an index and share a parent are applied together,
    highest index first, where the first of them appears. Each index then
    refers to the list as it was before any of them ran.
    """
    parsed = [_split_path(p) for p in paths]
    consumed: set[int] = set()
    for i, segments in enumerate(parsed):
        if i in consumed:
            continue
        if not _is_index(segments[-1]):
            _remove_in_place(doc, segments)
            continue
        parent = segments[:-1]
        group: list[int] = []
        for j in range(i, len(parsed)):
            other = parsed[j]
            if other[:-1] == parent and _is_index(other[-1]):
                group.append(int(other[-1]))
                consumed.add(j)
        for index in sorted(set(group), reverse=True):
            _remove_in_place(doc, [*parent, str(index)])


def _remove_in_place(doc: Any, segments: list[str]) -> None:
    node = doc
    for segment in segments[:-1]:
        node = _child(node, segment)
        if node is None:
            return
    last = segments[-1]
    if isinstance(node, dict):
        node.pop(last, None)
    elif isinstance(node, list) and _is_index(last):
        index = int(last)
        if index < len(node):
            del node[index]


def _child(node: Any, segment: str) -> Any:
    if isinstance(node, dict):
        return node.get(segment)
    if isinstance(node, list) and _is_index(segment):
        index = int(segment)
        return node[index] if index < len(node) else None
    return None


def _is_index(segment: str) -> bool:
    return segment.isascii() and segment.isdigit()
