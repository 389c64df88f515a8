"""Boundary validation for task writes and uploads.

The store itself is schema-agnostic; everything here runs before the
store is touched, so a rejected request never writes anything.

  - validate_task_key()      key must belong to the dependency graph
  - validate_merge()         field names on the task's allow-list,
                             values JSON-representable
  - validate_upload()        extension / MIME / size / blocked names
  - sanitize_filename()      safe storage name
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from partner_portal.config import settings
from partner_portal.middleware.exceptions import TaskValidationError
from partner_portal.onboarding.graph import TaskDependencyGraph, default_graph

MAX_FIELD_NAME_LENGTH = 100
MAX_NESTING_DEPTH = 16


# ── File kinds ──────────────────────────────────────────────

IMAGE_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/svg+xml"}
DOCUMENT_TYPES = {"application/pdf"}

# Dangerous extensions, matched anywhere in the name (double-extension tricks)
BLOCKED_EXTENSIONS = (
    ".exe", ".bat", ".cmd", ".com", ".msi", ".scr",
    ".js", ".vbs", ".ps1", ".sh", ".bash",
    ".html", ".htm", ".php", ".asp", ".aspx", ".jsp",
    ".dll", ".so", ".dylib",
)


@dataclass(frozen=True)
class FileKind:
    name: str
    extensions: frozenset[str]
    mime_types: frozenset[str]
    max_mb: int
    label: str


def _file_kinds() -> dict[str, FileKind]:
    return {
        "image": FileKind(
            "image",
            frozenset({".png", ".jpg", ".jpeg", ".svg"}),
            frozenset(IMAGE_TYPES),
            settings.max_image_mb,
            "PNG, JPG, SVG",
        ),
        "document": FileKind(
            "document",
            frozenset({".pdf"}),
            frozenset(DOCUMENT_TYPES),
            settings.max_document_mb,
            "PDF",
        ),
        "menu": FileKind(
            "menu",
            frozenset({".png", ".jpg", ".jpeg", ".pdf"}),
            frozenset((IMAGE_TYPES - {"image/svg+xml"}) | DOCUMENT_TYPES),
            20,
            "PNG, JPG, PDF",
        ),
    }


# ── Per-task field rules ────────────────────────────────────


@dataclass(frozen=True)
class FieldRules:
    """Which top-level keys a task's editor may write."""
    fields: frozenset[str]
    prefixes: tuple[str, ...] = ()
    # (field-name prefix, file kind) in priority order
    uploads: tuple[tuple[str, str], ...] = ()
    auto_complete_on_upload: bool = False

    def allows(self, name: str) -> bool:
        return name in self.fields or any(name.startswith(p) for p in self.prefixes)

    def upload_kind(self, field_name: str) -> str | None:
        for prefix, kind in self.uploads:
            if field_name.startswith(prefix):
                return kind
        return None


TASK_FIELD_RULES: dict[str, FieldRules] = {
    "brand": FieldRules(
        fields=frozenset({"brand_palette", "logo_url", "notes"}),
        prefixes=("logo_",),
        uploads=(("logo_", "image"),),
    ),
    "venue": FieldRules(
        fields=frozenset({"venues", "notes"}),
        prefixes=("menu_",),
        uploads=(("menu_", "menu"),),
    ),
    "pos": FieldRules(
        fields=frozenset({"provider", "status", "pos_version", "pos_contact", "notes"}),
    ),
    "devices": FieldRules(
        fields=frozenset({"use_daze_tablets", "tablet_count", "notes"}),
    ),
    "legal": FieldRules(
        fields=frozenset({
            "pilot_signed", "signed_at", "signer_name", "signer_title",
            "property_name", "legal_entity_name", "dba_name", "billing_address",
            "authorized_signer_name", "authorized_signer_title", "contact_email",
            "start_date", "pilot_term_days",
        }),
        prefixes=("signature_", "agreement_"),
        uploads=(("signature_", "image"), ("agreement_", "document")),
        # A signed agreement upload completes the legal step
        auto_complete_on_upload=True,
    ),
}

_PERMISSIVE = FieldRules(fields=frozenset(), prefixes=("",))


def rules_for(task_key: str) -> FieldRules:
    return TASK_FIELD_RULES.get(task_key, _PERMISSIVE)


# ── Validators ──────────────────────────────────────────────


def validate_task_key(task_key: str, graph: TaskDependencyGraph = default_graph) -> str:
    if task_key not in graph:
        raise TaskValidationError(
            f"Unknown task: {task_key!r}",
            details={"allowed": list(graph.keys)},
        )
    return task_key


def _check_json_value(value: Any, path: str, depth: int = 0) -> None:
    if depth > MAX_NESTING_DEPTH:
        raise TaskValidationError(f"{path}: nested too deeply")
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise TaskValidationError(f"{path}: numbers must be finite")
        return
    if isinstance(value, Mapping):
        for k, v in value.items():
            if not isinstance(k, str):
                raise TaskValidationError(f"{path}: object keys must be strings")
            _check_json_value(v, f"{path}.{k}", depth + 1)
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_json_value(item, f"{path}[{i}]", depth + 1)
        return
    raise TaskValidationError(f"{path}: unsupported value type {type(value).__name__}")


def _check_field_name(name: Any) -> None:
    if not isinstance(name, str) or not name.strip():
        raise TaskValidationError("Field names must be non-empty strings")
    if len(name) > MAX_FIELD_NAME_LENGTH:
        raise TaskValidationError(f"Field name too long: {name[:20]}...")


def validate_merge(
    task_key: str,
    merge_map: Mapping[str, Any] | None,
    remove_keys: Iterable[str] = (),
    graph: TaskDependencyGraph = default_graph,
) -> tuple[dict[str, Any], list[str]]:
    """Check a merge request; returns (merge_map, remove_keys) as plain containers."""
    validate_task_key(task_key, graph)
    if merge_map is None:
        merge_map = {}
    if not isinstance(merge_map, Mapping):
        raise TaskValidationError("Task data must be an object")

    rules = rules_for(task_key)
    rejected = []
    for name, value in merge_map.items():
        _check_field_name(name)
        if not rules.allows(name):
            rejected.append(name)
            continue
        _check_json_value(value, name)
    if rejected:
        raise TaskValidationError(
            f"Fields not accepted for {task_key}: {', '.join(sorted(rejected))}",
            details={"rejected": sorted(rejected)},
        )

    remove = list(remove_keys)
    for name in remove:
        # Any stored key may be removed, including ones no longer allow-listed
        _check_field_name(name)

    _check_task_values(task_key, merge_map)
    return dict(merge_map), remove


def _check_task_values(task_key: str, merge_map: Mapping[str, Any]) -> None:
    if task_key == "devices" and "tablet_count" in merge_map:
        count = merge_map["tablet_count"]
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= 20:
            raise TaskValidationError("tablet_count must be a whole number from 1 to 20")
    if task_key == "brand" and "brand_palette" in merge_map:
        palette = merge_map["brand_palette"]
        if not isinstance(palette, list) or not all(isinstance(c, str) for c in palette):
            raise TaskValidationError("brand_palette must be a list of colour strings")


_UPLOAD_FIELD = re.compile(r"[A-Za-z0-9_]+")


def _upload_kind(
    task_key: str,
    field_name: str,
    graph: TaskDependencyGraph = default_graph,
) -> FileKind:
    validate_task_key(task_key, graph)
    _check_field_name(field_name)
    # Upload field names become part of the blob path
    if not _UPLOAD_FIELD.fullmatch(field_name):
        raise TaskValidationError(
            "Upload field names may only contain letters, digits and underscores"
        )
    kind_name = rules_for(task_key).upload_kind(field_name)
    if kind_name is None:
        raise TaskValidationError(f"{task_key} does not accept uploads into {field_name!r}")
    return _file_kinds()[kind_name]


def upload_limit_bytes(
    task_key: str,
    field_name: str,
    graph: TaskDependencyGraph = default_graph,
) -> int:
    """Largest upload accepted into `field_name`, checked before reading the body."""
    return _upload_kind(task_key, field_name, graph).max_mb * 1024 * 1024


def validate_upload(
    task_key: str,
    field_name: str,
    filename: str,
    content_type: str | None,
    size: int,
    graph: TaskDependencyGraph = default_graph,
) -> FileKind:
    """Check an upload against its task's rules; returns the matched file kind."""
    kind = _upload_kind(task_key, field_name, graph)

    if not filename:
        raise TaskValidationError("Uploaded file has no name")
    lower = filename.lower()
    extension = "." + lower.rsplit(".", 1)[-1] if "." in lower else ""
    if extension not in kind.extensions:
        raise TaskValidationError(f"Only {kind.label} files are allowed here")
    if (content_type or "").lower() not in kind.mime_types:
        raise TaskValidationError(f"Invalid file type. Allowed: {kind.label}")
    if size <= 0:
        raise TaskValidationError("Uploaded file is empty")
    if size > kind.max_mb * 1024 * 1024:
        raise TaskValidationError(f"File size must be less than {kind.max_mb}MB")
    # Inner extensions too: "invoice.exe.pdf" is rejected
    inner = {"." + part for part in lower.split(".")[1:-1]}
    if inner & set(BLOCKED_EXTENSIONS):
        raise TaskValidationError("This file type is not allowed for security reasons")
    return kind


_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(filename: str) -> str:
    """Strip path separators, null bytes and unusual characters; cap at 100 chars."""
    safe = re.sub(r"[\\/]", "_", filename)
    safe = safe.replace("\0", "")
    safe = _UNSAFE_CHARS.sub("_", safe)
    if len(safe) > 100:
        ext = safe.rsplit(".", 1)[-1] if "." in safe else ""
        safe = f"{safe[:90]}.{ext}" if ext else safe[:100]
    return safe or "file"
