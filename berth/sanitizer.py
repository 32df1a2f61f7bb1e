"""Path and content normalization.

Pure functions, no I/O. Client-supplied paths arrive in many spellings
(``./src/a.js``, ``/workspace/src/a.js``, ``src//a.js``, ``"src\\a.js"``);
all of them must map to one storage key and one container path.
"""

from __future__ import annotations

import json
import posixpath
import re

import structlog
import yaml

logger = structlog.get_logger()

DEFAULT_ROOT = "/workspace"

# C0 controls, DEL and C1 controls
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
# Everything but printable ASCII, tab, LF and CR
_NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7e\t\n\r]")

_SURROUNDING = " \t\"'`"
_SEPARATORS_RE = re.compile(r"/+")

# Truncated suffix -> complete extension. Only exact trailing suffixes match.
EXTENSION_REPAIRS: dict[str, str] = {
    ".j": ".js",
    ".t": ".ts",
    ".p": ".py",
    ".c": ".cpp",
    ".h": ".hpp",
    ".ja": ".java",
    ".ph": ".php",
    ".r": ".rb",
    ".g": ".go",
    ".sw": ".swift",
    ".k": ".kt",
    ".s": ".sh",
    ".ht": ".html",
    ".cs": ".css",
    ".jso": ".json",
    ".x": ".xml",
    ".m": ".md",
    ".y": ".yml",
    ".do": ".dockerfile",
}

DEFAULT_PACKAGE_MANIFEST: dict = {
    "name": "app",
    "version": "1.0.0",
    "main": "index.js",
    "type": "module",
    "scripts": {"test": 'echo "Error: no test specified" && exit 1'},
    "keywords": [],
    "author": "",
    "license": "ISC",
    "description": "",
}


def _normalize_once(path: str, root_prefixes: tuple[str, ...]) -> str:
    path = _CONTROL_CHARS_RE.sub("", path)
    path = path.strip(_SURROUNDING)
    path = _SEPARATORS_RE.sub("/", path.replace("\\", "/"))

    for prefix in root_prefixes:
        if path == prefix:
            return ""
        if path.startswith(prefix + "/"):
            path = path[len(prefix) + 1 :]
            break

    segments = [s for s in path.split("/") if s not in ("", ".", "..")]
    return "/".join(segments)


def normalize_path(raw: str, root: str = DEFAULT_ROOT) -> str:
    """Canonicalize a client path to a root-relative POSIX path.

    Returns ``""`` for the sandbox root itself. The result is a fixed point:
    ``normalize_path(normalize_path(p)) == normalize_path(p)``.
    """
    if not raw:
        return ""
    root = root.strip("/")
    root_prefixes = (f"/{root}",) if root else ()

    path = raw
    # Each pass only removes characters, so this terminates.
    while True:
        normalized = _normalize_once(path, root_prefixes)
        if normalized == path:
            return normalized
        path = normalized


def repair_extension(path: str) -> str:
    """Complete a truncated file extension (``src/index.j`` -> ``src/index.js``)."""
    for incomplete, complete in EXTENSION_REPAIRS.items():
        if path.endswith(incomplete) and not path.endswith(complete):
            fixed = path[: -len(incomplete)] + complete
            logger.debug("sanitizer.extension_repaired", path=path, fixed=fixed)
            return fixed
    return path


def structured_kind(path: str) -> str | None:
    name = posixpath.basename(path).lower()
    if name.endswith(".json"):
        return "json"
    if name.endswith((".yaml", ".yml")):
        return "yaml"
    return None


def _clean_text(content: str | bytes) -> str:
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="ignore")
    cleaned = _NON_PRINTABLE_RE.sub("", content)
    return cleaned.replace("\r\n", "\n").replace("\r", "\n")


def _reformat_json(text: str, path: str) -> str:
    try:
        return json.dumps(json.loads(text), indent=2)
    except (ValueError, RecursionError) as e:
        logger.warning("sanitizer.invalid_json", path=path, error=str(e))
        if posixpath.basename(path) == "package.json":
            return json.dumps(DEFAULT_PACKAGE_MANIFEST, indent=2)
        return "{}"


def _reformat_yaml(text: str, path: str) -> str:
    try:
        data = yaml.safe_load(text)
        if data is None:
            return "{}\n"
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False, width=4096)
    except (yaml.YAMLError, RecursionError, ValueError) as e:
        logger.warning("sanitizer.invalid_yaml", path=path, error=str(e))
        return "{}\n"


def sanitize_content(content: str | bytes | None, path: str = "") -> str:
    """Restrict content to printable ASCII and LF line endings.

    Structured-data files are parsed and re-serialized with stable formatting.
    Never raises: malformed input degrades to a safe default.
    """
    if content is None:
        content = ""
    if not isinstance(content, (str, bytes)):
        logger.warning("sanitizer.invalid_content_type", path=path, type=type(content).__name__)
        content = str(content)

    cleaned = _clean_text(content)

    kind = structured_kind(path)
    if kind == "json":
        cleaned = _reformat_json(cleaned, path)
    elif kind == "yaml":
        cleaned = _clean_text(_reformat_yaml(cleaned, path))

    return cleaned
