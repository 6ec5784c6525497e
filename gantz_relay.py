#!/usr/bin/env python3
"""Gantz tool relay: serve manifest-defined local tools to MCP clients."""

from __future__ import annotations

import argparse
import asyncio
import base64
import codecs
import copy
import hashlib
import hmac
import json
import logging
import os
import random
import re
import secrets
import signal
import socket
import sys
import threading
import time
import uuid
from asyncio import subprocess as aio_subprocess
from collections import deque
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

try:  # Prefer the official encoder when available
    import toon_format as _toon_format
    _toon_encode = _toon_format.encode
except ImportError:  # pragma: no cover - fallback for environments without toon
    _toon_encode = None

import httpx
import uvicorn
import websockets
import yaml
from mcp.server import Server
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    CallToolResult,
    ErrorData,
    TextContent,
    Tool,
)
from starlette.applications import Starlette
from starlette.datastructures import Headers
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Mount, Route

__version__ = "0.1.0"

logger = logging.getLogger("gantz-relay")
audit_logger = logging.getLogger("gantz-relay.audit")

RELAY_NAME = "gantz-relay"
DEFAULT_MANIFEST = os.environ.get("GANTZ_MANIFEST", "gantz.yaml")
DEFAULT_HOST = os.environ.get("GANTZ_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.environ.get("GANTZ_PORT", "3000"))
DEFAULT_TIMEOUT = float(os.environ.get("GANTZ_TIMEOUT", "30"))
MAX_TIMEOUT = float(os.environ.get("GANTZ_MAX_TIMEOUT", "300"))
DEFAULT_OUTPUT_LIMIT = int(os.environ.get("GANTZ_OUTPUT_LIMIT", str(16 * 1024)))
DEFAULT_RATE_LIMIT = int(os.environ.get("GANTZ_RATE_LIMIT", "60"))
DEFAULT_EXPENSIVE_RATE_LIMIT = int(os.environ.get("GANTZ_EXPENSIVE_RATE_LIMIT", "10"))
REJECT_EXTRA_ARGUMENTS = os.environ.get("GANTZ_REJECT_EXTRA_ARGS", "1").strip().lower() not in {"0", "false", "no"}
SHELL_ARGUMENT_POLICY = os.environ.get("GANTZ_SHELL_ARGUMENT_POLICY", "escape").strip().lower()
ENV_PASSTHROUGH = tuple(
    name.strip()
    for name in os.environ.get("GANTZ_ENV_PASSTHROUGH", "PATH,HOME,LANG,LC_ALL,TZ,TMPDIR,USER").split(",")
    if name.strip()
)
DEFAULT_RELAY_URL = os.environ.get("GANTZ_RELAY_URL", "wss://relay.gantz.run/connect")
TUNNEL_TOKEN = os.environ.get("GANTZ_TUNNEL_TOKEN")
LOG_LEVEL = os.environ.get("GANTZ_LOG_LEVEL", "INFO")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_LOAD_ERROR = 2
EXIT_TUNNEL_ERROR = 3
EXIT_BIND_ERROR = 4

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_TOOL_NAME = re.compile(r"^[A-Za-z0-9_.\-]{1,64}$")
_PARAMETER_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SHELL_METACHARACTERS = re.compile(r"[;&|`$(){}\[\]<>]")

_READ_CHUNK = 4096
_CAPTURE_MARGIN = 1024
_READER_GRACE = 0.5

REDACTED = "[REDACTED]"


class RelayError(Exception):
    """Base class for failures reported to callers as ``{kind, message}``."""

    kind = "InternalError"
    code = INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class LoadError(RelayError):
    """Raised when a manifest or token file cannot be loaded."""

    kind = "Malformed"
    code = INVALID_PARAMS

    def __init__(self, tool_name: Optional[str], reason: str) -> None:
        self.tool_name = tool_name
        self.reason = reason
        message = f"Tool {tool_name!r}: {reason}" if tool_name else reason
        super().__init__(message)


class ValidationError(RelayError):
    kind = "ValidationError"
    code = INVALID_PARAMS


class MissingRequired(ValidationError):
    kind = "MissingRequired"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Missing required parameter: {name}")


class TypeMismatch(ValidationError):
    kind = "TypeMismatch"

    def __init__(self, name: str, expected: str, got: str) -> None:
        self.name = name
        self.expected = expected
        self.got = got
        super().__init__(f"Parameter {name!r} expected {expected}, got {got}")


class UnexpectedArgument(ValidationError):
    kind = "UnexpectedArgument"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unexpected parameter: {name}")


class InvalidValue(ValidationError):
    kind = "InvalidValue"

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        super().__init__(f"Parameter {name!r} {reason}")


class UnsafeArgument(ValidationError):
    kind = "UnsafeArgument"

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        super().__init__(f"Parameter {name!r} {reason}")


class AuthError(RelayError):
    kind = "AuthError"


class Unauthorized(AuthError):
    kind = "Unauthorized"
    code = -32001


class Forbidden(AuthError):
    kind = "Forbidden"
    code = -32003


class RateLimited(AuthError):
    kind = "RateLimited"
    code = -32029

    def __init__(self, message: str, *, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ToolNotFound(RelayError):
    kind = "NotFound"
    code = -32004

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ExecutionError(RelayError):
    """Raised when a tool process could not run to completion."""

    kind = "ExecutionError"
    code = -32000

    def __init__(
        self,
        message: str,
        *,
        stdout: Optional["CapturedOutput"] = None,
        stderr: Optional["CapturedOutput"] = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr

    def output(self) -> Dict[str, Dict[str, object]]:
        streams: Dict[str, Dict[str, object]] = {}
        if self.stdout is not None:
            streams["stdout"] = self.stdout.to_dict()
        if self.stderr is not None:
            streams["stderr"] = self.stderr.to_dict()
        return streams


class ExecutionTimeout(ExecutionError):
    """Raised when a tool exceeds its wall-clock timeout."""

    kind = "Timeout"
    code = -32008


class ExecutionCancelled(ExecutionError):
    kind = "Cancelled"
    code = -32800


class ProcessSpawnFailed(ExecutionError):
    kind = "ProcessSpawnFailed"


class SecretUnavailable(ExecutionError):
    kind = "SecretUnavailable"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Secret {name} is not available")


class TunnelError(RelayError):
    kind = "TunnelError"


class InvalidRequest(RelayError):
    kind = "InvalidRequest"
    code = INVALID_REQUEST


class MethodNotFound(RelayError):
    kind = "MethodNotFound"
    code = METHOD_NOT_FOUND

    def __init__(self, method: object) -> None:
        super().__init__(f"Unknown method: {method}")


class ParseError(RelayError):
    kind = "ParseError"
    code = PARSE_ERROR


class ParameterType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


_TYPE_CHECKS: Dict[ParameterType, Callable[[object], bool]] = {
    ParameterType.STRING: lambda value: isinstance(value, str),
    ParameterType.INTEGER: lambda value: isinstance(value, int) and not isinstance(value, bool),
    ParameterType.NUMBER: lambda value: isinstance(value, (int, float)) and not isinstance(value, bool),
    ParameterType.BOOLEAN: lambda value: isinstance(value, bool),
    ParameterType.ARRAY: lambda value: isinstance(value, list),
    ParameterType.OBJECT: lambda value: isinstance(value, dict),
}


def _type_name(value: object) -> str:
    """Return the JSON type name of a decoded value."""

    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


@dataclass(frozen=True)
class ParameterSpec:
    """One declared tool parameter."""

    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None
    description: str = ""
    raw: bool = False
    format: Optional[str] = None
    enum: Optional[Tuple[Any, ...]] = None

    def accepts(self, value: object) -> bool:
        return _TYPE_CHECKS[self.type](value)


@dataclass(frozen=True)
class ExecutionSpec:
    """How a tool runs: a shell template or a command with argument templates."""

    shell: Optional[str] = None
    command: Optional[str] = None
    args: Tuple[str, ...] = ()
    timeout: Optional[float] = None
    working_dir: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Tuple[str, ...] = ()
    streaming: bool = False

    def placeholders(self) -> List[str]:
        templates = [self.shell] if self.shell is not None else list(self.args)
        names: List[str] = []
        for template in templates:
            for match in _PLACEHOLDER.finditer(template):
                if match.group(1) not in names:
                    names.append(match.group(1))
        return names


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Tuple[ParameterSpec, ...]
    execution: ExecutionSpec
    expensive: bool = False

    def parameter(self, name: str) -> Optional[ParameterSpec]:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def input_schema(self) -> Dict[str, object]:
        properties: Dict[str, object] = {}
        required: List[str] = []
        for param in self.parameters:
            prop: Dict[str, object] = {"type": param.type.value}
            if param.description:
                prop["description"] = param.description
            if param.default is not None:
                prop["default"] = copy.deepcopy(param.default)
            if param.enum is not None:
                prop["enum"] = list(param.enum)
            properties[param.name] = prop
            if param.required:
                required.append(param.name)
        schema: Dict[str, object] = {
            "type": "object",
            "properties": properties,
            "additionalProperties": False,
        }
        if required:
            schema["required"] = required
        return schema

    def describe(self) -> Dict[str, object]:
        """Public view of the tool; execution details stay server-side."""

        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema(),
        }


class ToolRegistry(Mapping):
    """Immutable, name-indexed collection of tool definitions."""

    def __init__(
        self,
        tools: Iterable[ToolDefinition] = (),
        *,
        name: str = RELAY_NAME,
        version: str = "0.0.0",
        description: str = "",
        source: Optional[Path] = None,
    ) -> None:
        self.name = name
        self.version = version
        self.description = description
        self.source = source
        self._tools: Dict[str, ToolDefinition] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise LoadError(tool.name, "duplicate tool name")
            self._tools[tool.name] = tool
        self._schemas = tuple(tool.describe() for tool in self._tools.values())

    def __getitem__(self, name: str) -> ToolDefinition:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def require(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(name)
        return tool

    def schemas(self) -> List[Dict[str, object]]:
        return copy.deepcopy(list(self._schemas))


def load_manifest(path: os.PathLike | str) -> ToolRegistry:
    """Parse and validate a tool manifest, failing on the first violation."""

    manifest_path = Path(path).expanduser()
    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LoadError(None, f"Cannot read manifest {manifest_path}: {exc.strerror or exc}") from exc

    try:
        if manifest_path.suffix.lower() == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise LoadError(None, f"Manifest {manifest_path.name} is not valid: {exc}") from exc

    return parse_manifest(document, base_dir=manifest_path.resolve().parent, source=manifest_path)


def parse_manifest(
    document: object,
    *,
    base_dir: Optional[Path] = None,
    source: Optional[Path] = None,
) -> ToolRegistry:
    if not isinstance(document, dict):
        raise LoadError(None, "Manifest must be a mapping with a 'tools' entry")

    base = (base_dir or Path.cwd()).resolve()
    raw_tools = document.get("tools")
    entries: List[Tuple[Optional[str], object]] = []
    if isinstance(raw_tools, list):
        entries = [(None, entry) for entry in raw_tools]
    elif isinstance(raw_tools, dict):
        entries = [(str(key), entry) for key, entry in raw_tools.items()]
    else:
        raise LoadError(None, "'tools' must be a list or a mapping")

    tools: List[ToolDefinition] = []
    seen: set[str] = set()
    for key, entry in entries:
        tool = _parse_tool(key, entry, base)
        if tool.name in seen:
            raise LoadError(tool.name, "duplicate tool name")
        seen.add(tool.name)
        tools.append(tool)

    return ToolRegistry(
        tools,
        name=str(document.get("name") or RELAY_NAME),
        version=str(document.get("version") or "0.0.0"),
        description=str(document.get("description") or ""),
        source=source,
    )


def _parse_tool(key: Optional[str], raw: object, base_dir: Path) -> ToolDefinition:
    if not isinstance(raw, dict):
        raise LoadError(key, "tool entry must be a mapping")

    name = raw.get("name", key)
    if not isinstance(name, str) or not _TOOL_NAME.match(name):
        raise LoadError(key or str(name), "name must be 1-64 characters of letters, digits, '_', '-' or '.'")
    if key is not None and name != key:
        raise LoadError(name, f"name does not match its key {key!r}")

    description = raw.get("description")
    if not isinstance(description, str) or not description.strip():
        raise LoadError(name, "description must be a non-empty string")

    parameters = _parse_parameters(name, raw.get("parameters"))
    execution = _parse_execution(name, raw.get("execution"), base_dir)

    declared = {param.name for param in parameters}
    for placeholder in execution.placeholders():
        if placeholder not in declared:
            raise LoadError(name, f"placeholder {{{{{placeholder}}}}} does not match a declared parameter")

    for param in parameters:
        if param.raw and execution.shell is None:
            raise LoadError(name, f"parameter {param.name!r} is raw but the tool has no shell template")

    expensive = raw.get("expensive", False)
    if not isinstance(expensive, bool):
        raise LoadError(name, "'expensive' must be a boolean")

    return ToolDefinition(
        name=name,
        description=description.strip(),
        parameters=parameters,
        execution=execution,
        expensive=expensive,
    )


def _parse_parameters(tool_name: str, raw: object) -> Tuple[ParameterSpec, ...]:
    if raw is None:
        return ()
    entries: List[Tuple[Optional[str], object]]
    if isinstance(raw, list):
        entries = [(None, entry) for entry in raw]
    elif isinstance(raw, dict):
        entries = [(str(key), entry) for key, entry in raw.items()]
    else:
        raise LoadError(tool_name, "'parameters' must be a list or a mapping")

    params: List[ParameterSpec] = []
    seen: set[str] = set()
    for key, entry in entries:
        param = _parse_parameter(tool_name, key, entry)
        if param.name in seen:
            raise LoadError(tool_name, f"duplicate parameter {param.name!r}")
        seen.add(param.name)
        params.append(param)
    return tuple(params)


def _parse_parameter(tool_name: str, key: Optional[str], raw: object) -> ParameterSpec:
    if isinstance(raw, str) and key is not None:
        raw = {"type": raw}
    if not isinstance(raw, dict):
        raise LoadError(tool_name, "each parameter must be a mapping")

    name = raw.get("name", key)
    if not isinstance(name, str) or not _PARAMETER_NAME.match(name):
        raise LoadError(tool_name, f"invalid parameter name {name!r}")

    type_raw = raw.get("type", "string")
    try:
        param_type = ParameterType(str(type_raw).lower())
    except ValueError:
        allowed = ", ".join(item.value for item in ParameterType)
        raise LoadError(tool_name, f"parameter {name!r} has unknown type {type_raw!r} (expected one of {allowed})") from None

    required = raw.get("required", False)
    raw_flag = raw.get("raw", False)
    for flag_name, flag in (("required", required), ("raw", raw_flag)):
        if not isinstance(flag, bool):
            raise LoadError(tool_name, f"parameter {name!r} field '{flag_name}' must be a boolean")

    default = raw.get("default")
    if default is not None:
        if required:
            raise LoadError(tool_name, f"required parameter {name!r} cannot declare a default")
        if not _TYPE_CHECKS[param_type](default):
            raise LoadError(
                tool_name,
                f"default for {name!r} must be {param_type.value}, got {_type_name(default)}",
            )

    enum_raw = raw.get("enum")
    enum: Optional[Tuple[Any, ...]] = None
    if enum_raw is not None:
        if not isinstance(enum_raw, list) or not enum_raw:
            raise LoadError(tool_name, f"enum for {name!r} must be a non-empty list")
        for option in enum_raw:
            if not _TYPE_CHECKS[param_type](option):
                raise LoadError(tool_name, f"enum value {option!r} for {name!r} is not a {param_type.value}")
        if default is not None and default not in enum_raw:
            raise LoadError(tool_name, f"default for {name!r} is not one of its enum values")
        enum = tuple(enum_raw)

    value_format = raw.get("format")
    if value_format is not None:
        if value_format != "path":
            raise LoadError(tool_name, f"parameter {name!r} has unsupported format {value_format!r}")
        if param_type is not ParameterType.STRING:
            raise LoadError(tool_name, f"format 'path' requires {name!r} to be a string")

    description = raw.get("description", "")
    if not isinstance(description, str):
        raise LoadError(tool_name, f"description of {name!r} must be a string")

    return ParameterSpec(
        name=name,
        type=param_type,
        required=required,
        default=default,
        description=description.strip(),
        raw=raw_flag,
        format=value_format,
        enum=enum,
    )


def _parse_execution(tool_name: str, raw: object, base_dir: Path) -> ExecutionSpec:
    if not isinstance(raw, dict):
        raise LoadError(tool_name, "'execution' must be a mapping")

    shell = raw.get("shell")
    command = raw.get("command")
    if (shell is None) == (command is None):
        raise LoadError(tool_name, "execution needs exactly one of 'shell' or 'command'")

    args_raw = raw.get("args", [])
    if shell is not None:
        if not isinstance(shell, str) or not shell.strip():
            raise LoadError(tool_name, "'shell' must be a non-empty string")
        if args_raw:
            raise LoadError(tool_name, "'args' is only valid together with 'command'")
    else:
        if not isinstance(command, str) or not command.strip():
            raise LoadError(tool_name, "'command' must be a non-empty string")
        if _PLACEHOLDER.search(command):
            raise LoadError(tool_name, "'command' cannot contain placeholders")
    if not isinstance(args_raw, list) or not all(isinstance(arg, str) for arg in args_raw):
        raise LoadError(tool_name, "'args' must be a list of strings")

    timeout = raw.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise LoadError(tool_name, "'timeout' must be a positive number of seconds")
        timeout = float(timeout)

    working_dir_raw = raw.get("workingDir", raw.get("working_dir"))
    working_dir = str(base_dir)
    if working_dir_raw is not None:
        if not isinstance(working_dir_raw, str) or not working_dir_raw.strip():
            raise LoadError(tool_name, "'workingDir' must be a non-empty string")
        if _PLACEHOLDER.search(working_dir_raw):
            raise LoadError(tool_name, "'workingDir' cannot contain placeholders")
        candidate = Path(working_dir_raw).expanduser()
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        working_dir = str(candidate.resolve())

    env_raw = raw.get("env", {})
    if not isinstance(env_raw, dict):
        raise LoadError(tool_name, "'env' must be a mapping")
    env: Dict[str, str] = {}
    for key, value in env_raw.items():
        if not isinstance(key, str) or not _ENV_NAME.match(key):
            raise LoadError(tool_name, f"invalid environment variable name {key!r}")
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise LoadError(tool_name, f"environment value for {key} must be a string")
        env[key] = str(value)

    secrets_raw = raw.get("secrets", [])
    if not isinstance(secrets_raw, list):
        raise LoadError(tool_name, "'secrets' must be a list of names")
    for name in secrets_raw:
        if not isinstance(name, str) or not _ENV_NAME.match(name):
            raise LoadError(tool_name, f"invalid secret name {name!r}")

    streaming = raw.get("streaming", False)
    if not isinstance(streaming, bool):
        raise LoadError(tool_name, "'streaming' must be a boolean")

    return ExecutionSpec(
        shell=shell,
        command=command,
        args=tuple(args_raw),
        timeout=timeout,
        working_dir=working_dir,
        env=env,
        secrets=tuple(secrets_raw),
        streaming=streaming,
    )


_REDACTION_PATTERNS: Tuple[Tuple["re.Pattern[str]", str], ...] = (
    (re.compile(r"(?i)\b(bearer\s+)[A-Za-z0-9\-._~+/]{8,}=*"), rf"\g<1>{REDACTED}"),
    (re.compile(r"(?i)\b([a-z][a-z0-9+.\-]*://[^\s:/@]+:)[^\s@/]+(@)"), rf"\g<1>{REDACTED}\g<2>"),
    (
        re.compile(
            r"(?i)\b([A-Za-z0-9_\-]*(?:password|passwd|pwd|secret|token|api[_\-]?key|access[_\-]?key|private[_\-]?key))"
            r"(\s*[:=]\s*)([\"']?)[^\s\"',;&]+"
        ),
        rf"\g<1>\g<2>\g<3>{REDACTED}",
    ),
    (re.compile(r"\bsk-(?:ant-|proj-)?[A-Za-z0-9_\-]{16,}"), REDACTED),
    (re.compile(r"\bgh[pousr]_[A-Za-z0-9]{30,}"), REDACTED),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}"), REDACTED),
    (re.compile(r"\bxox[abposr]-[A-Za-z0-9\-]{10,}"), REDACTED),
    (re.compile(r"\bAKIA[0-9A-Z]{16}\b"), REDACTED),
    (re.compile(r"\bAIza[0-9A-Za-z_\-]{35}"), REDACTED),
)

_SENSITIVE_KEY = re.compile(r"(?i)(password|passwd|secret|token|api[_\-]?key|access[_\-]?key|private[_\-]?key|credential|auth)")

_MIN_LITERAL_LENGTH = 4


class Redactor:
    """Mask credentials in text before it leaves the relay."""

    def __init__(self, literals: Iterable[str] = ()) -> None:
        self._literals: set[str] = set()
        self._lock = threading.Lock()
        for value in literals:
            self.add_literal(value)

    def add_literal(self, value: Optional[str]) -> None:
        if not value or len(value) < _MIN_LITERAL_LENGTH:
            return
        with self._lock:
            self._literals.add(value)

    def redact(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            literals = sorted(self._literals, key=len, reverse=True)
        for literal in literals:
            if literal in text:
                text = text.replace(literal, REDACTED)
        for pattern, replacement in _REDACTION_PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def redact_arguments(self, value: object, *, key: Optional[str] = None) -> object:
        if key is not None and _SENSITIVE_KEY.search(key):
            return REDACTED
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {str(k): self.redact_arguments(v, key=str(k)) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.redact_arguments(item) for item in value]
        return value


class SecretResolver(Protocol):
    def resolve(self, name: str) -> Optional[str]:  # pragma: no cover - typing only
        ...


class EnvironmentSecretResolver:
    """Resolve secrets from the process environment at call time."""

    def __init__(self, prefix: str = "", environ: Optional[Mapping] = None) -> None:
        self.prefix = prefix
        self._environ = environ

    def resolve(self, name: str) -> Optional[str]:
        environ = self._environ if self._environ is not None else os.environ
        value = environ.get(f"{self.prefix}{name}")
        return str(value) if value is not None else None


@dataclass
class CapturedOutput:
    """Bounded, redacted contents of one output stream."""

    text: str = ""
    truncated: bool = False
    original_size: int = 0

    def __str__(self) -> str:
        return self.text

    def to_dict(self) -> Dict[str, object]:
        return {"text": self.text, "truncated": self.truncated, "originalSize": self.original_size}


@dataclass
class ExecutionResult:
    """Outcome of a tool process that ran to completion."""

    success: bool
    exit_code: Optional[int]
    stdout: CapturedOutput
    stderr: CapturedOutput
    duration_ms: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "exitCode": self.exit_code,
            "durationMs": self.duration_ms,
            "stdout": self.stdout.to_dict(),
            "stderr": self.stderr.to_dict(),
        }


class _OutputCapture:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.size = 0
        self.streamed = 0
        self._buffer = bytearray()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> None:
        self.size += len(chunk)
        room = self.limit + _CAPTURE_MARGIN - len(self._buffer)
        if room > 0:
            self._buffer.extend(chunk[:room])

    def stream_lines(self, chunk: bytes, *, final: bool = False) -> str:
        """Return the complete lines available for progress streaming."""

        remaining = self.limit - self.streamed
        piece = chunk[: max(0, remaining)]
        self.streamed += len(piece)
        self._pending += self._decoder.decode(piece, final=final)
        if final:
            text, self._pending = self._pending, ""
            return text
        cut = self._pending.rfind("\n")
        if cut < 0:
            return ""
        text, self._pending = self._pending[: cut + 1], self._pending[cut + 1 :]
        return text

    def finish(self, redactor: Redactor) -> CapturedOutput:
        text = redactor.redact(self._buffer.decode("utf-8", errors="replace"))
        data = text.encode("utf-8")
        truncated = self.size > self.limit or len(data) > self.limit
        if len(data) > self.limit:
            text = data[: self.limit].decode("utf-8", errors="ignore")
        return CapturedOutput(text=text, truncated=truncated, original_size=self.size)


OutputCallback = Callable[[str, str], Awaitable[None]]


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    if value is None:
        return ""
    return str(value)


def _advance_quote_state(text: str, state: Optional[str]) -> Optional[str]:
    """Track POSIX shell quoting across ``text``; returns None, ``'`` or ``"``."""

    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif state == "'":
            if char == "'":
                state = None
        elif char == "\\":
            escaped = True
        elif state == '"':
            if char == '"':
                state = None
        elif char in "'\"":
            state = char
    return state


def _positional_reference(index: int, state: Optional[str]) -> str:
    if state == '"':
        return f"${{{index}}}"
    if state == "'":
        return f"'\"${{{index}}}\"'"
    return f'"${{{index}}}"'


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


class ExecutionSandbox:
    """Render tool templates and run them as bounded child processes."""

    def __init__(
        self,
        *,
        secrets: Optional[SecretResolver] = None,
        redactor: Optional[Redactor] = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        default_timeout: float = DEFAULT_TIMEOUT,
        max_timeout: float = MAX_TIMEOUT,
        reject_extra_arguments: bool = REJECT_EXTRA_ARGUMENTS,
        shell_policy: str = SHELL_ARGUMENT_POLICY,
        env_passthrough: Sequence[str] = ENV_PASSTHROUGH,
        shell: str = "/bin/sh",
    ) -> None:
        if shell_policy not in {"escape", "reject"}:
            raise ValueError(f"Unknown shell argument policy: {shell_policy}")
        if output_limit <= 0:
            raise ValueError("output_limit must be positive")
        self.secrets: SecretResolver = secrets or EnvironmentSecretResolver()
        self.redactor = redactor or Redactor()
        self.output_limit = output_limit
        self.default_timeout = default_timeout
        self.max_timeout = max_timeout
        self.reject_extra_arguments = reject_extra_arguments
        self.shell_policy = shell_policy
        self.env_passthrough = tuple(env_passthrough)
        self.shell = shell
        self.spawn_count = 0
        self._processes: Dict[str, aio_subprocess.Process] = {}
        self._cancelled: set[str] = set()

    def validate_arguments(self, tool: ToolDefinition, arguments: Optional[Mapping]) -> Dict[str, object]:
        """Type-check arguments and fill in declared defaults."""

        supplied = dict(arguments or {})
        extras = [name for name in supplied if tool.parameter(name) is None]
        if extras:
            if self.reject_extra_arguments:
                raise UnexpectedArgument(extras[0])
            logger.debug("Ignoring undeclared arguments for %s: %s", tool.name, ", ".join(extras))

        values: Dict[str, object] = {}
        for param in tool.parameters:
            value = supplied.get(param.name)
            if value is None:
                if param.required:
                    raise MissingRequired(param.name)
                if param.default is not None:
                    values[param.name] = copy.deepcopy(param.default)
                continue
            if not param.accepts(value):
                raise TypeMismatch(param.name, param.type.value, _type_name(value))
            if param.enum is not None and value not in param.enum:
                raise InvalidValue(param.name, "is not one of the allowed values")
            if isinstance(value, str) and "\x00" in value:
                raise UnsafeArgument(param.name, "contains a NUL byte")
            values[param.name] = value
        return values

    def working_dir(self, tool: ToolDefinition) -> Path:
        return Path(tool.execution.working_dir or Path.cwd())

    def render(self, tool: ToolDefinition, values: Mapping[str, object]) -> List[str]:
        """Build the argv for a validated argument map."""

        workdir = self.working_dir(tool)
        for param in tool.parameters:
            if param.format == "path" and param.name in values:
                self._check_path(param.name, str(values[param.name]), workdir)

        execution = tool.execution
        if execution.shell is not None:

            positional: List[str] = []
            slots: Dict[str, int] = {}
            script: List[str] = []
            state: Optional[str] = None
            cursor = 0
            for match in _PLACEHOLDER.finditer(execution.shell):
                literal = execution.shell[cursor:match.start()]
                script.append(literal)
                state = _advance_quote_state(literal, state)
                cursor = match.end()

                name = match.group(1)
                text = _stringify(values.get(name))
                param = tool.parameter(name)
                if param is not None and param.raw:
                    script.append(text)
                    state = _advance_quote_state(text, state)
                    continue
                if self.shell_policy == "reject" and _SHELL_METACHARACTERS.search(text):
                    raise UnsafeArgument(name, "contains shell metacharacters")
                if name not in slots:
                    positional.append(text)
                    slots[name] = len(positional)
                script.append(_positional_reference(slots[name], state))
            script.append(execution.shell[cursor:])

            # Values travel as "$1".."$N" so the shell never parses them.
            return [self.shell, "-c", "".join(script), tool.name, *positional]

        argv = [str(execution.command)]
        for template in execution.args:
            whole = _PLACEHOLDER.fullmatch(template.strip())
            if whole and whole.group(1) not in values:
                continue
            argv.append(_PLACEHOLDER.sub(lambda match: _stringify(values.get(match.group(1))), template))
        return argv

    @staticmethod
    def _check_path(name: str, value: str, workdir: Path) -> None:
        candidate = Path(value)
        if candidate.is_absolute():
            raise UnsafeArgument(name, "must be a relative path")
        root = workdir.resolve()
        resolved = (root / candidate).resolve()
        if resolved != root and root not in resolved.parents:
            raise UnsafeArgument(name, "escapes the working directory")

    def _child_env(self, tool: ToolDefinition) -> Dict[str, str]:
        env = {name: os.environ[name] for name in self.env_passthrough if name in os.environ}
        env.update(tool.execution.env)
        for name in tool.execution.secrets:
            value = self.secrets.resolve(name)
            if value is None:
                raise SecretUnavailable(name)
            self.redactor.add_literal(value)
            env[name] = value
        return env

    def timeout_for(self, tool: ToolDefinition) -> float:
        requested = tool.execution.timeout or self.default_timeout
        return max(0.001, min(self.max_timeout, requested))

    async def execute(
        self,
        tool: ToolDefinition,
        arguments: Optional[Mapping] = None,
        *,
        request_id: Optional[str] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ExecutionResult:
        request_id = request_id or _new_request_id()
        values = self.validate_arguments(tool, arguments)
        argv = self.render(tool, values)
        env = self._child_env(tool)
        timeout = self.timeout_for(tool)
        cwd = self.working_dir(tool)

        stdout_capture = _OutputCapture(self.output_limit)
        stderr_capture = _OutputCapture(self.output_limit)
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=aio_subprocess.DEVNULL,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                cwd=str(cwd),
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("Failed to start tool %s: %s", tool.name, exc)
            raise ProcessSpawnFailed(f"Failed to start tool {tool.name}") from exc

        self.spawn_count += 1
        self._processes[request_id] = process
        logger.debug("Started %s as pid %s (request %s)", tool.name, process.pid, request_id)

        async def _pump(stream: Optional[asyncio.StreamReader], capture: _OutputCapture, label: str) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(_READ_CHUNK)
                capture.feed(chunk)
                if on_output is not None:
                    text = capture.stream_lines(chunk, final=not chunk)
                    if text:
                        await on_output(label, self.redactor.redact(text))
                if not chunk:
                    break

        readers = [
            asyncio.create_task(_pump(process.stdout, stdout_capture, "stdout")),
            asyncio.create_task(_pump(process.stderr, stderr_capture, "stderr")),
        ]

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._kill_group(process)
            await process.wait()
            await self._drain(readers)
            raise ExecutionTimeout(
                f"Execution timed out after {timeout:g}s",
                stdout=stdout_capture.finish(self.redactor),
                stderr=stderr_capture.finish(self.redactor),
            ) from exc
        except asyncio.CancelledError:
            self._kill_group(process)
            for reader in readers:
                reader.cancel()
            raise
        finally:
            self._processes.pop(request_id, None)

        # Reap anything the tool left running in its process group.
        self._kill_group(process)
        await self._drain(readers)

        stdout = stdout_capture.finish(self.redactor)
        stderr = stderr_capture.finish(self.redactor)
        if request_id in self._cancelled:
            self._cancelled.discard(request_id)
            raise ExecutionCancelled("Execution was cancelled", stdout=stdout, stderr=stderr)

        exit_code = process.returncode
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug("Tool %s exited with %s after %dms", tool.name, exit_code, duration_ms)
        return ExecutionResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _kill_group(process: aio_subprocess.Process) -> None:
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)

    @staticmethod
    async def _drain(readers: Sequence["asyncio.Task[None]"]) -> None:
        done, pending = await asyncio.wait(readers, timeout=_READER_GRACE)
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.debug("Output reader failed", exc_info=task.exception())

    def cancel(self, request_id: str) -> bool:
        """Kill the process group serving ``request_id``."""

        process = self._processes.get(request_id)
        if process is None:
            return False
        self._cancelled.add(request_id)
        self._kill_group(process)
        logger.info("Cancelled request %s", request_id)
        return True

    def running(self) -> List[str]:
        return sorted(self._processes)

    async def shutdown(self) -> None:
        for request_id in list(self._processes):
            self.cancel(request_id)


OPERATION_SCOPES = {"list": "read", "call": "write"}
ALL_SCOPES = frozenset({"read", "write"})


def _token_id_for(value: str) -> str:
    return f"tok_{hashlib.sha256(value.encode('utf-8')).hexdigest()[:10]}"


@dataclass(frozen=True)
class AuthToken:
    token_id: str
    value: str = field(repr=False)
    operations: FrozenSet[str] = ALL_SCOPES
    tools: Optional[FrozenSet[str]] = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_entry(self) -> Dict[str, object]:
        entry: Dict[str, object] = {
            "id": self.token_id,
            "value": self.value,
            "scope": sorted(self.operations),
            "issuedAt": self.issued_at.isoformat(),
        }
        if self.tools is not None:
            entry["tools"] = sorted(self.tools)
        return entry


class SlidingWindowRateLimiter:
    """Per-key request logs over a sliding time window."""

    def __init__(self, window: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def acquire(self, *limits: Tuple[str, int]) -> Optional[float]:
        """Record one hit against every key, or return the seconds to wait."""

        now = self._clock()
        with self._lock:
            retry_after: Optional[float] = None
            for key, limit in limits:
                if limit <= 0:
                    continue
                hits = self._hits.setdefault(key, deque())
                while hits and now - hits[0] >= self.window:
                    hits.popleft()
                if len(hits) >= limit:
                    wait = self.window - (now - hits[0])
                    retry_after = wait if retry_after is None else max(retry_after, wait)
            if retry_after is not None:
                return retry_after
            for key, limit in limits:
                if limit > 0:
                    self._hits[key].append(now)
        return None


class Authorizer:
    """Validate bearer tokens, scopes and per-token rate limits."""

    def __init__(
        self,
        tokens: Iterable[AuthToken] = (),
        *,
        require_auth: bool = True,
        requests_per_minute: int = DEFAULT_RATE_LIMIT,
        expensive_per_minute: int = DEFAULT_EXPENSIVE_RATE_LIMIT,
        expensive_tools: Iterable[str] = (),
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        redactor: Optional[Redactor] = None,
    ) -> None:
        self.require_auth = require_auth
        self.requests_per_minute = requests_per_minute
        self.expensive_per_minute = expensive_per_minute
        self.expensive_tools = frozenset(expensive_tools)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.redactor = redactor
        self._lock = threading.Lock()
        self._tokens: List[AuthToken] = []
        self._anonymous = AuthToken(token_id="anonymous", value="", operations=ALL_SCOPES)
        for token in tokens:
            self.add_token(token)

    @property
    def tokens(self) -> List[AuthToken]:
        with self._lock:
            return list(self._tokens)

    def add_token(self, token: AuthToken) -> None:
        if not token.value:
            raise ValueError("Token value must not be empty")
        with self._lock:
            self._tokens.append(token)
        if self.redactor is not None:
            self.redactor.add_literal(token.value)

    def issue_token(
        self,
        *,
        token_id: Optional[str] = None,
        operations: Iterable[str] = ALL_SCOPES,
        tools: Optional[Iterable[str]] = None,
    ) -> AuthToken:
        token = mint_token(token_id=token_id, operations=operations, tools=tools)
        self.add_token(token)
        logger.info("Issued token %s", token.token_id)
        return token

    def authenticate(self, value: Optional[str]) -> AuthToken:
        """Look up a bearer token without leaking timing information."""

        match: Optional[AuthToken] = None
        if value:
            presented = value.encode("utf-8")
            for token in self.tokens:
                if hmac.compare_digest(token.value.encode("utf-8"), presented) and match is None:
                    match = token
        if match is not None:
            return match
        if not self.require_auth:
            return self._anonymous
        if not value:
            raise Unauthorized("Missing bearer token")
        raise Unauthorized("Invalid bearer token")

    def authorize(
        self,
        value: Optional[str],
        tool_name: Optional[str],
        operation: str,
        *,
        expensive: bool = False,
    ) -> AuthToken:
        token = self.authenticate(value)
        scope = OPERATION_SCOPES.get(operation)
        if scope is None or scope not in token.operations:
            raise Forbidden(f"Token is not allowed to {operation} tools")
        if tool_name is not None and token.tools is not None and tool_name not in token.tools:
            raise Forbidden(f"Token is not allowed to call tool: {tool_name}")

        limits: List[Tuple[str, int]] = [(f"{token.token_id}:requests", self.requests_per_minute)]
        if tool_name is not None and (expensive or tool_name in self.expensive_tools):
            limits.append((f"{token.token_id}:expensive", self.expensive_per_minute))
        retry_after = self.rate_limiter.acquire(*limits)
        if retry_after is not None:
            raise RateLimited(
                f"Rate limit exceeded; retry in {retry_after:.0f}s",
                retry_after=retry_after,
            )
        return token


def mint_token(
    *,
    token_id: Optional[str] = None,
    operations: Iterable[str] = ALL_SCOPES,
    tools: Optional[Iterable[str]] = None,
) -> AuthToken:
    value = secrets.token_urlsafe(32)
    ops = frozenset(operations)
    unknown = ops - ALL_SCOPES
    if unknown:
        raise ValueError(f"Unknown scope: {', '.join(sorted(unknown))}")
    return AuthToken(
        token_id=token_id or _token_id_for(value),
        value=value,
        operations=ops,
        tools=frozenset(tools) if tools is not None else None,
    )


def load_tokens(path: os.PathLike | str) -> List[AuthToken]:
    """Read a YAML or JSON token file: ``tokens: [{id, value, scope, tools}]``."""

    tokens_path = Path(path).expanduser()
    try:
        document = yaml.safe_load(tokens_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise LoadError(None, f"Cannot read token file {tokens_path}: {exc.strerror or exc}") from exc
    except yaml.YAMLError as exc:
        raise LoadError(None, f"Token file {tokens_path.name} is not valid: {exc}") from exc

    entries = document.get("tokens") if isinstance(document, dict) else None
    if not isinstance(entries, list):
        raise LoadError(None, "Token file must contain a 'tokens' list")

    tokens: List[AuthToken] = []
    for index, entry in enumerate(entries):
        label = f"token #{index + 1}"
        if not isinstance(entry, dict):
            raise LoadError(None, f"{label} must be a mapping")
        value = entry.get("value")
        env_name = entry.get("env")
        if value is None and isinstance(env_name, str):
            value = os.environ.get(env_name)
            if value is None:
                raise LoadError(None, f"{label} reads {env_name}, which is not set")
        if not isinstance(value, str) or not value:
            raise LoadError(None, f"{label} needs a non-empty 'value'")
        scope = entry.get("scope", sorted(ALL_SCOPES))
        if isinstance(scope, str):
            scope = [scope]
        if not isinstance(scope, list) or not set(scope) <= ALL_SCOPES:
            raise LoadError(None, f"{label} scope must be a subset of read, write")
        tools = entry.get("tools")
        if tools is not None and (not isinstance(tools, list) or not all(isinstance(t, str) for t in tools)):
            raise LoadError(None, f"{label} tools must be a list of tool names")
        token_id = entry.get("id")
        tokens.append(
            AuthToken(
                token_id=str(token_id) if token_id else _token_id_for(value),
                value=value,
                operations=frozenset(scope),
                tools=frozenset(tools) if tools is not None else None,
            )
        )
    return tokens


@dataclass
class InvocationEvent:
    request_id: str
    tool: str
    caller: str = "unknown"
    arguments: Dict[str, object] = field(default_factory=dict)
    transport: str = ""
    outcome: str = "error"
    error_kind: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "requestId": self.request_id,
            "tool": self.tool,
            "caller": self.caller,
            "arguments": self.arguments,
            "transport": self.transport,
            "outcome": self.outcome,
            "errorKind": self.error_kind,
            "exitCode": self.exit_code,
            "durationMs": self.duration_ms,
        }


class JsonFormatter(logging.Formatter):
    """JSON formatter for the audit file."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "audit", None)
        if isinstance(payload, dict):
            return json.dumps(payload, sort_keys=True, default=str)
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


class AuditLog:
    """Record one structured entry per tool invocation."""

    def __init__(self, *, redactor: Optional[Redactor] = None, path: Optional[os.PathLike | str] = None) -> None:
        self.redactor = redactor or Redactor()
        self._handler: Optional[logging.Handler] = None
        if path is not None:
            handler = RotatingFileHandler(str(path), maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
            handler.setFormatter(JsonFormatter())
            audit_logger.addHandler(handler)
            self._handler = handler

    def record(self, event: InvocationEvent) -> None:
        event.arguments = self.redactor.redact_arguments(event.arguments)  # type: ignore[assignment]
        payload = event.to_dict()
        audit_logger.info(json.dumps(payload, sort_keys=True, default=str), extra={"audit": payload})

    def close(self) -> None:
        if self._handler is not None:
            audit_logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None


@dataclass
class InvocationRequest:
    tool_name: str
    arguments: Dict[str, object]
    caller_token: Optional[str] = field(default=None, repr=False)
    request_id: str = field(default_factory=_new_request_id)
    transport: str = "internal"


@dataclass
class Chunk:
    """One event of a tool call stream, tagged with its request id."""

    request_id: str
    type: str
    data: Dict[str, object] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in {"result", "error"}

    def to_dict(self) -> Dict[str, object]:
        return {"requestId": self.request_id, "type": self.type, **self.data}


@dataclass
class ToolCallOutcome:
    request_id: str
    result: Optional[Dict[str, object]] = None
    error: Optional[Dict[str, str]] = None
    output: Optional[Dict[str, object]] = None
    progress: List[Dict[str, object]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolRelay:
    """Transport-agnostic core behind every binding."""

    def __init__(
        self,
        registry: ToolRegistry,
        sandbox: ExecutionSandbox,
        authorizer: Authorizer,
        *,
        audit: Optional[AuditLog] = None,
        manifest_path: Optional[Path] = None,
    ) -> None:
        self._registry = registry
        self.sandbox = sandbox
        self.authorizer = authorizer
        self.audit = audit or AuditLog(redactor=sandbox.redactor)
        self.manifest_path = manifest_path or registry.source
        self._owners: Dict[str, str] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def reload(self, path: Optional[os.PathLike | str] = None) -> ToolRegistry:
        """Load the manifest again and swap it in; the old registry stays on failure."""

        target = path or self.manifest_path
        if target is None:
            raise LoadError(None, "No manifest path to reload from")
        registry = load_manifest(target)
        self._registry = registry
        self.manifest_path = Path(target)
        logger.info("Reloaded %d tools from %s", len(registry), target)
        return registry

    def initialize(self, token: Optional[str]) -> Dict[str, object]:
        self.authorizer.authenticate(token)
        return {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "serverInfo": {"name": RELAY_NAME, "version": __version__},
            "capabilities": {"tools": {"listChanged": False}},
            "manifest": {"name": self._registry.name, "version": self._registry.version},
        }

    def list_tools(self, token: Optional[str]) -> List[Dict[str, object]]:
        self.authorizer.authorize(token, None, "list")
        return self._registry.schemas()

    async def produce(self, request: InvocationRequest) -> AsyncIterator[Chunk]:
        """Yield the chunks of one tool call; closing the stream cancels it."""

        queue: "asyncio.Queue[Optional[Chunk]]" = asyncio.Queue()
        task = asyncio.create_task(self._invoke(request, queue.put_nowait))
        try:
            while True:
                chunk = await queue.get()
                if chunk is None:
                    break
                yield chunk
        finally:
            if not task.done():
                task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _invoke(self, request: InvocationRequest, emit: Callable[[Optional[Chunk]], None]) -> None:
        request_id = request.request_id
        event = InvocationEvent(
            request_id=request_id,
            tool=request.tool_name,
            arguments=dict(request.arguments or {}),
            transport=request.transport,
        )
        started = time.monotonic()
        registry = self._registry
        try:
            try:
                caller = self.authorizer.authenticate(request.caller_token)
                event.caller = caller.token_id
                tool = registry.require(request.tool_name)
                self.authorizer.authorize(request.caller_token, tool.name, "call", expensive=tool.expensive)
            except (AuthError, ToolNotFound) as exc:
                event.outcome = "denied"
                event.error_kind = exc.kind
                emit(Chunk(request_id, "error", {"error": exc.to_payload()}))
                return

            emit(Chunk(request_id, "accepted", {"tool": tool.name}))

            on_output: Optional[OutputCallback] = None
            if tool.execution.streaming:

                async def on_output(stream: str, text: str) -> None:
                    emit(Chunk(request_id, "progress", {"stream": stream, "text": text}))

            self._owners[request_id] = caller.token_id
            result = await self.sandbox.execute(
                tool,
                request.arguments,
                request_id=request_id,
                on_output=on_output,
            )
            event.exit_code = result.exit_code
            event.outcome = "success" if result.success else "error"
            if not result.success:
                event.error_kind = "NonZeroExit"
            emit(Chunk(request_id, "result", {"result": result.to_dict()}))
        except ExecutionError as exc:
            event.outcome = {"Timeout": "timeout", "Cancelled": "cancelled"}.get(exc.kind, "error")
            event.error_kind = exc.kind
            data: Dict[str, object] = {"error": exc.to_payload()}
            if exc.output():
                data["output"] = exc.output()
            emit(Chunk(request_id, "error", data))
        except RelayError as exc:
            event.error_kind = exc.kind
            emit(Chunk(request_id, "error", {"error": exc.to_payload()}))
        except asyncio.CancelledError:
            event.outcome = "cancelled"
            event.error_kind = "Cancelled"
            raise
        except Exception:
            logger.error("Unexpected failure in request %s", request_id, exc_info=True)
            event.error_kind = "InternalError"
            emit(Chunk(request_id, "error", {"error": {"kind": "InternalError", "message": "Internal error"}}))
        finally:
            self._owners.pop(request_id, None)
            event.duration_ms = int((time.monotonic() - started) * 1000)
            self.audit.record(event)
            emit(None)

    async def call_tool(self, request: InvocationRequest) -> ToolCallOutcome:
        outcome = ToolCallOutcome(request_id=request.request_id)
        async for chunk in self.produce(request):
            if chunk.type == "progress":
                outcome.progress.append(chunk.to_dict())
            elif chunk.type == "result":
                outcome.result = chunk.data["result"]  # type: ignore[assignment]
            elif chunk.type == "error":
                outcome.error = chunk.data["error"]  # type: ignore[assignment]
                outcome.output = chunk.data.get("output")  # type: ignore[assignment]
        return outcome

    def cancel(self, request_id: object, token: Optional[str]) -> bool:
        caller = self.authorizer.authenticate(token)
        if not isinstance(request_id, str):
            raise InvalidRequest("'requestId' must be a string")
        owner = self._owners.get(request_id)
        if owner is None:
            return False
        if owner != caller.token_id:
            raise Forbidden("Request belongs to another caller")
        return self.sandbox.cancel(request_id)

    async def dispatch(
        self,
        message: object,
        token: Optional[str],
        *,
        transport: str = "http",
    ) -> AsyncIterator[Dict[str, object]]:
        """Serve one JSON-RPC message, yielding notifications then the reply."""

        if not isinstance(message, dict):
            yield _rpc_error(None, InvalidRequest("Request must be a JSON object"))
            return
        msg_id = message.get("id")
        method = message.get("method")
        params = message.get("params") or {}
        try:
            if not isinstance(method, str):
                raise InvalidRequest("Missing 'method'")
            if not isinstance(params, dict):
                raise InvalidRequest("'params' must be an object")

            if method == "initialize":
                yield _rpc_result(msg_id, self.initialize(token))
            elif method == "ping":
                self.authorizer.authenticate(token)
                yield _rpc_result(msg_id, {})
            elif method == "tools/list":
                yield _rpc_result(msg_id, {"tools": self.list_tools(token)})
            elif method == "tools/call":
                name = params.get("name")
                arguments = params.get("arguments") or {}
                if not isinstance(name, str) or not name:
                    raise InvalidRequest("Missing tool name")
                if not isinstance(arguments, dict):
                    raise InvalidRequest("Arguments must be an object")
                request = InvocationRequest(
                    tool_name=name,
                    arguments=arguments,
                    caller_token=token,
                    transport=transport,
                )
                async for chunk in self.produce(request):
                    if not chunk.terminal:
                        yield {"jsonrpc": "2.0", "method": "notifications/progress", "params": chunk.to_dict()}
                    elif chunk.type == "result":
                        yield _rpc_result(msg_id, {"requestId": chunk.request_id, **chunk.data["result"]})  # type: ignore[dict-item]
                    else:
                        error = dict(chunk.data["error"])  # type: ignore[call-overload]
                        error["code"] = _ERROR_CODES.get(str(error.get("kind")), INTERNAL_ERROR)
                        data: Dict[str, object] = {"requestId": chunk.request_id}
                        if chunk.data.get("output"):
                            data["output"] = chunk.data["output"]
                        error["data"] = data
                        yield {"jsonrpc": "2.0", "id": msg_id, "error": error}
            elif method in {"notifications/cancelled", "$/cancelRequest"}:
                cancelled = self.cancel(params.get("requestId"), token)
                if msg_id is not None:
                    yield _rpc_result(msg_id, {"cancelled": cancelled})
            else:
                raise MethodNotFound(method)
        except RelayError as exc:
            yield _rpc_error(msg_id, exc)


_ERROR_CODES: Dict[str, int] = {
    cls.kind: cls.code
    for cls in (
        LoadError,
        MissingRequired,
        TypeMismatch,
        UnexpectedArgument,
        InvalidValue,
        UnsafeArgument,
        Unauthorized,
        Forbidden,
        RateLimited,
        ToolNotFound,
        ExecutionError,
        ExecutionTimeout,
        ExecutionCancelled,
        ProcessSpawnFailed,
        SecretUnavailable,
    )
}


def _rpc_result(msg_id: object, result: Dict[str, object]) -> Dict[str, object]:
    return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def _rpc_error(msg_id: object, exc: RelayError) -> Dict[str, object]:
    error: Dict[str, object] = {"code": exc.code, **exc.to_payload()}
    if isinstance(exc, RateLimited):
        error["data"] = {"retryAfter": round(exc.retry_after, 3)}
    return {"jsonrpc": "2.0", "id": msg_id, "error": error}


_STATUS_BY_KIND = {
    "MissingRequired": "validation_error",
    "TypeMismatch": "validation_error",
    "UnexpectedArgument": "validation_error",
    "InvalidValue": "validation_error",
    "UnsafeArgument": "validation_error",
    "Unauthorized": "denied",
    "Forbidden": "denied",
    "RateLimited": "denied",
    "NotFound": "not_found",
    "Timeout": "timeout",
    "Cancelled": "cancelled",
}


def _split_output_lines(stream: Optional[str]) -> List[str]:
    """Split a stdout/stderr field into lines."""

    if not stream:
        return []
    return stream.splitlines()


def _filter_stream_lines(lines: Sequence[str]) -> List[str]:
    """Drop whitespace-only lines to save response tokens."""

    return [str(line) for line in lines if str(line).strip()]


def _render_toon_block(payload: Dict[str, object]) -> str:
    """Encode a payload in TOON format, falling back to JSON when unavailable."""

    if _toon_encode is not None:
        try:
            body = _toon_encode(payload)
        except Exception:  # pragma: no cover - encoder failures fall back to JSON
            logger.debug("Failed to encode payload as TOON", exc_info=True)
        else:
            body = body.rstrip()
            return f"```toon\n{body}\n```" if body else "```toon\n```"

    fallback = json.dumps(payload, indent=2, sort_keys=True)
    return f"```json\n{fallback}\n```"


def _output_mode() -> str:
    """Return the configured output mode."""

    return os.environ.get("GANTZ_OUTPUT_MODE", "compact").strip().lower()


def _render_compact_output(payload: Dict[str, object]) -> str:
    """Render a terse, token-efficient textual summary."""

    lines: List[str] = []
    stdout_raw = payload.get("stdout", ())
    stdout_lines = list(stdout_raw) if isinstance(stdout_raw, (list, tuple)) else []
    stderr_raw = payload.get("stderr", ())
    stderr_lines = list(stderr_raw) if isinstance(stderr_raw, (list, tuple)) else []
    if stdout_lines:
        lines.append("\n".join(str(item) for item in stdout_lines))
    if stderr_lines:
        stderr_text = "\n".join(str(item) for item in stderr_lines)
        lines.append(f"stderr:\n{stderr_text}")

    truncated = payload.get("truncated")
    if truncated:
        lines.append(f"truncated: {', '.join(str(name) for name in truncated)}")  # type: ignore[union-attr]

    status = str(payload.get("status", ""))
    exit_code = payload.get("exitCode")
    error = payload.get("error")

    if isinstance(error, dict) and error.get("kind") != "NonZeroExit":
        lines.append(f"error: {error.get('kind')}: {error.get('message')}")
    elif not lines and payload.get("summary"):
        lines.append(str(payload["summary"]))

    if exit_code not in (None, 0):
        lines.insert(0, f"exit: {exit_code}")

    if status and status.lower() not in {"", "success"}:
        lines.insert(0, f"status: {status}")

    text = "\n".join(line for line in lines if line).strip()
    if text:
        return text
    return status or "success"


def _build_compact_structured_payload(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a trimmed structured representation for compact responses."""

    compact: Dict[str, object] = {}
    status = str(payload.get("status", ""))
    exit_code = payload.get("exitCode")

    if status and status.lower() != "success":
        compact["status"] = status
    if exit_code not in (None, 0):
        compact["exitCode"] = exit_code
    for key in ("stdout", "stderr", "truncated", "error"):
        if payload.get(key):
            compact[key] = payload[key]

    summary = payload.get("summary")
    if summary and (status.lower() != "success" or not compact.get("stdout")):
        compact["summary"] = summary

    return compact or {key: payload[key] for key in ("status", "summary") if key in payload}


def _is_empty_field(value: object) -> bool:
    """Return True when a structured field should be omitted."""

    if value is None:
        return True
    if isinstance(value, (list, tuple, set, dict, str)):
        return len(value) == 0
    return False


def _build_response_payload(
    *,
    status: str,
    summary: str,
    exit_code: Optional[int] = None,
    stdout: Optional[str] = None,
    stderr: Optional[str] = None,
    truncated: Optional[Sequence[str]] = None,
    error: Optional[Dict[str, str]] = None,
) -> Dict[str, object]:
    """Create a structured payload shared by compact/TOON responses."""

    payload: Dict[str, object] = {
        "status": status,
        "summary": summary,
    }
    if exit_code is not None:
        payload["exitCode"] = exit_code

    stdout_lines = _filter_stream_lines(_split_output_lines(stdout))
    if stdout_lines:
        payload["stdout"] = stdout_lines
    stderr_lines = _filter_stream_lines(_split_output_lines(stderr))
    if stderr_lines:
        payload["stderr"] = stderr_lines
    if truncated:
        payload["truncated"] = list(truncated)
    if error:
        payload["error"] = dict(error)

    if status == "success" and not stdout_lines and not stderr_lines and summary.strip().lower() == "success":
        payload["summary"] = "Success (no output)"

    return {key: value for key, value in payload.items() if not _is_empty_field(value)}


def _build_tool_response(
    *,
    status: str,
    summary: str,
    exit_code: Optional[int] = None,
    stdout: Optional[str] = None,
    stderr: Optional[str] = None,
    truncated: Optional[Sequence[str]] = None,
    error: Optional[Dict[str, str]] = None,
) -> CallToolResult:
    """Render a tool response in compact text (default) or TOON format."""

    payload = _build_response_payload(
        status=status,
        summary=summary,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        truncated=truncated,
        error=error,
    )
    is_error = str(payload.get("status", "error")).lower() != "success"

    if _output_mode() == "compact":
        return CallToolResult(
            content=[TextContent(type="text", text=_render_compact_output(payload))],
            structuredContent=_build_compact_structured_payload(payload),
            isError=is_error,
        )

    return CallToolResult(
        content=[TextContent(type="text", text=_render_toon_block(payload))],
        structuredContent=payload,
        isError=is_error,
    )


def _response_from_chunk(chunk: Chunk) -> CallToolResult:
    if chunk.type == "result":
        result: Dict[str, Any] = chunk.data["result"]  # type: ignore[assignment]
        stdout = result["stdout"]["text"]
        stderr = result["stderr"]["text"]
        truncated = [name for name in ("stdout", "stderr") if result[name]["truncated"]]
        exit_code = result.get("exitCode")
        if result["success"]:
            return _build_tool_response(
                status="success",
                summary="Success",
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                truncated=truncated,
            )
        summary = f"Exited with code {exit_code}"
        return _build_tool_response(
            status="error",
            summary=summary,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            truncated=truncated,
            error={"kind": "NonZeroExit", "message": summary},
        )

    error: Dict[str, str] = chunk.data["error"]  # type: ignore[assignment]
    output: Dict[str, Any] = chunk.data.get("output") or {}  # type: ignore[assignment]
    truncated = [name for name, stream in output.items() if stream.get("truncated")]
    return _build_tool_response(
        status=_STATUS_BY_KIND.get(error["kind"], "error"),
        summary=f"{error['kind']}: {error['message']}",
        stdout=(output.get("stdout") or {}).get("text"),
        stderr=(output.get("stderr") or {}).get("text"),
        truncated=truncated,
        error=error,
    )


class RelayMCPServer:
    """One MCP session bound to the relay on behalf of a single caller."""

    def __init__(self, relay: ToolRelay, token: Optional[str], *, transport: str = "stdio") -> None:
        self.relay = relay
        self.token = token
        self.transport = transport
        self.app: Server = Server(RELAY_NAME, version=__version__)
        self.app.list_tools()(self.list_tools)
        self.app.call_tool(validate_input=False)(self.call_tool)

    async def list_tools(self) -> List[Tool]:
        try:
            schemas = self.relay.list_tools(self.token)
        except RelayError as exc:
            raise McpError(ErrorData(code=exc.code, message=exc.message, data={"kind": exc.kind})) from exc
        return [
            Tool(name=str(item["name"]), description=str(item["description"]), inputSchema=item["inputSchema"])  # type: ignore[arg-type]
            for item in schemas
        ]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, object]]) -> CallToolResult:
        request = InvocationRequest(
            tool_name=name,
            arguments=dict(arguments or {}),
            caller_token=self.token,
            transport=self.transport,
        )
        progress_token = self._progress_token()
        progress = 0
        terminal: Optional[Chunk] = None
        async for chunk in self.relay.produce(request):
            if chunk.type == "progress" and progress_token is not None:
                progress += 1
                await self._send_progress(progress_token, progress, str(chunk.data.get("text", "")))
            elif chunk.terminal:
                terminal = chunk
        if terminal is None:  # pragma: no cover - produce always ends with a terminal chunk
            return _build_tool_response(status="error", summary="No result", error={"kind": "InternalError", "message": "No result"})
        return _response_from_chunk(terminal)

    def _progress_token(self) -> object:
        try:
            ctx = self.app.request_context
        except LookupError:
            return None
        meta = getattr(ctx, "meta", None)
        return getattr(meta, "progressToken", None) if meta is not None else None

    async def _send_progress(self, progress_token: object, progress: int, message: str) -> None:
        try:
            session = self.app.request_context.session
            await session.send_progress_notification(progress_token, float(progress), message=message)  # type: ignore[arg-type]
        except Exception:  # pragma: no cover - progress is best effort
            logger.debug("Failed to send progress notification", exc_info=True)

    async def run(self, read_stream, write_stream) -> None:
        await self.app.run(read_stream, write_stream, self.app.create_initialization_options())


async def serve_stdio(relay: ToolRelay, token: Optional[str]) -> None:
    server = RelayMCPServer(relay, token, transport="stdio")
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream)


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class BearerAuthMiddleware:
    """Validate the bearer token on every HTTP request except health checks."""

    def __init__(self, app, *, authorizer: Authorizer, exempt_paths: Sequence[str] = ("/health",)) -> None:
        self.app = app
        self.authorizer = authorizer
        self.exempt_paths = set(exempt_paths)

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http" or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        token = _bearer_token(Headers(scope=scope).get("authorization"))
        try:
            self.authorizer.authenticate(token)
        except AuthError as exc:
            response = JSONResponse(
                {"error": exc.to_payload()},
                status_code=401,
                headers={"WWW-Authenticate": "Bearer"},
            )
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["token"] = token
        await self.app(scope, receive, send)


def create_http_app(relay: ToolRelay) -> Starlette:
    """Build the Starlette app: JSON-RPC over SSE plus the MCP SSE transport."""

    sse = SseServerTransport("/messages/")

    async def health(request: Request) -> Response:
        return JSONResponse({"status": "ok", "tools": len(relay.registry)})

    async def rpc(request: Request) -> Response:
        token = getattr(request.state, "token", None)
        try:
            message = json.loads(await request.body())
        except ValueError:
            message = None
            parse_failed = True
        else:
            parse_failed = False

        async def _events() -> AsyncIterator[str]:
            if parse_failed:
                replies: AsyncIterator[Dict[str, object]] = _single(_rpc_error(None, ParseError("Request body is not valid JSON")))
            else:
                replies = relay.dispatch(message, token, transport="http")
            async for reply in replies:
                yield f"data: {json.dumps(reply, separators=(',', ':'))}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(
            _events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def handle_sse(request: Request) -> Response:
        server = RelayMCPServer(relay, getattr(request.state, "token", None), transport="sse")
        async with sse.connect_sse(request.scope, request.receive, request._send) as (read_stream, write_stream):  # type: ignore[attr-defined]
            await server.run(read_stream, write_stream)
        return Response()

    return Starlette(
        routes=[
            Route("/health", endpoint=health, methods=["GET"]),
            Route("/rpc", endpoint=rpc, methods=["POST"]),
            Route("/sse", endpoint=handle_sse, methods=["GET"]),
            Mount("/messages/", app=sse.handle_post_message),
        ],
        middleware=[Middleware(BearerAuthMiddleware, authorizer=relay.authorizer)],
    )


async def _single(item: Dict[str, object]) -> AsyncIterator[Dict[str, object]]:
    yield item


class TunnelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}


class TunnelClient:
    """Keep the local server reachable through an outbound relay connection."""

    def __init__(
        self,
        local_port: int,
        *,
        relay_url: str = DEFAULT_RELAY_URL,
        token: Optional[str] = TUNNEL_TOKEN,
        local_host: str = "127.0.0.1",
        subdomain: Optional[str] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
        max_retries: Optional[int] = None,
        connect_timeout: float = 10.0,
        on_state_change: Optional[Callable[[TunnelState, Optional[str]], None]] = None,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.local_port = local_port
        self.relay_url = relay_url
        self.token = token
        self.local_host = local_host
        self.subdomain = subdomain
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.max_retries = max_retries
        self.connect_timeout = connect_timeout
        self.on_state_change = on_state_change
        self._connector = connector or websockets.connect
        self._http = http_client
        self._owns_http = http_client is None
        self._state = TunnelState.IDLE
        self._public_url: Optional[str] = None
        self._ws: Any = None
        self._task: Optional[asyncio.Task[None]] = None
        self._inflight: Dict[str, asyncio.Task[None]] = {}
        self._send_lock = asyncio.Lock()
        self._closing = False

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def public_url(self) -> Optional[str]:
        return self._public_url

    def _set_state(self, state: TunnelState) -> None:
        if state == self._state:
            return
        self._state = state
        if state is TunnelState.CONNECTED:
            logger.info("Tunnel connected: %s", self._public_url)
        elif state in {TunnelState.FAILED, TunnelState.RECONNECTING}:
            logger.warning("Tunnel %s", state.value)
        else:
            logger.info("Tunnel %s", state.value)
        if self.on_state_change is not None:
            try:
                self.on_state_change(state, self._public_url)
            except Exception:  # pragma: no cover - observer failures are not fatal
                logger.debug("Tunnel state callback failed", exc_info=True)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=f"http://{self.local_host}:{self.local_port}",
                timeout=httpx.Timeout(None, connect=5.0),
            )
        return self._http

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with equal jitter."""

        ceiling = min(self.max_backoff, self.initial_backoff * (2 ** attempt))
        return ceiling / 2 + random.uniform(0, ceiling / 2)

    async def connect(self) -> str:
        """Register with the relay and start serving; failure is fatal."""

        self._closing = False
        self._set_state(TunnelState.CONNECTING)
        try:
            ws, url = await self._open()
        except TunnelError:
            self._set_state(TunnelState.FAILED)
            raise
        self._public_url = url
        self._set_state(TunnelState.CONNECTED)
        self._task = asyncio.create_task(self._run(ws))
        return url

    async def _open(self) -> Tuple[Any, str]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            ws = await asyncio.wait_for(
                self._connector(self.relay_url, additional_headers=headers),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            raise TunnelError(f"Could not reach relay {self.relay_url}: {exc or type(exc).__name__}") from exc

        try:
            await ws.send(
                json.dumps(
                    {
                        "type": "register",
                        "subdomain": self.subdomain,
                        "localPort": self.local_port,
                        "version": __version__,
                    }
                )
            )
            raw = await asyncio.wait_for(ws.recv(), timeout=self.connect_timeout)
            reply = json.loads(raw)
        except (OSError, ValueError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            await ws.close()
            raise TunnelError(f"Relay registration failed: {exc or type(exc).__name__}") from exc

        if not isinstance(reply, dict) or reply.get("type") != "registered" or not isinstance(reply.get("url"), str):
            await ws.close()
            detail = reply.get("message") if isinstance(reply, dict) else None
            raise TunnelError(f"Relay rejected registration: {detail or 'unexpected reply'}")
        if isinstance(reply.get("subdomain"), str):
            self.subdomain = reply["subdomain"]
        return ws, reply["url"]

    async def _run(self, ws: Any) -> None:
        while not self._closing:
            await self._serve(ws)
            if self._closing:
                break
            self._set_state(TunnelState.RECONNECTING)
            attempt = 0
            while True:
                if self.max_retries is not None and attempt >= self.max_retries:
                    self._set_state(TunnelState.FAILED)
                    return
                delay = self.backoff_delay(attempt)
                attempt += 1
                logger.warning("Reconnecting to relay in %.1fs (attempt %d)", delay, attempt)
                await asyncio.sleep(delay)
                if self._closing:
                    return
                try:
                    ws, url = await self._open()
                except TunnelError as exc:
                    logger.warning("%s", exc)
                    continue
                if url != self._public_url:
                    logger.warning("Relay assigned a new public URL: %s", url)
                self._public_url = url
                self._set_state(TunnelState.CONNECTED)
                break

    async def _serve(self, ws: Any) -> None:
        self._ws = ws
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug("Ignoring malformed relay frame")
                    continue
                if not isinstance(frame, dict):
                    continue
                kind = frame.get("type")
                if kind == "request":
                    request_id = str(frame.get("id"))
                    task = asyncio.create_task(self._forward(ws, frame))
                    self._inflight[request_id] = task
                    task.add_done_callback(lambda _t, rid=request_id: self._inflight.pop(rid, None))
                elif kind == "cancel":
                    task = self._inflight.get(str(frame.get("id")))
                    if task is not None:
                        task.cancel()
                elif kind == "ping":
                    await self._send(ws, {"type": "pong"})
                else:
                    logger.debug("Ignoring relay frame of type %r", kind)
        except websockets.ConnectionClosed as exc:
            logger.debug("Relay connection closed: %s", exc)
        except Exception:
            logger.warning("Relay connection failed", exc_info=True)
            with suppress(Exception):
                await ws.close()
        finally:
            self._ws = None
            for task in list(self._inflight.values()):
                task.cancel()

    async def _send(self, ws: Any, frame: Dict[str, object]) -> None:
        async with self._send_lock:
            await ws.send(json.dumps(frame, separators=(",", ":")))

    async def _forward(self, ws: Any, frame: Dict[str, Any]) -> None:
        request_id = str(frame.get("id"))
        method = str(frame.get("method") or "GET").upper()
        path = str(frame.get("path") or "/")
        if not path.startswith("/"):
            path = f"/{path}"
        raw_headers = frame.get("headers") or {}
        headers = {
            str(key): str(value)
            for key, value in raw_headers.items()
            if str(key).lower() not in _HOP_BY_HOP
        }
        try:
            body = base64.b64decode(frame.get("body") or "")
        except ValueError:
            body = b""

        started = False
        try:
            async with self._client().stream(method, path, headers=headers, content=body) as response:
                await self._send(
                    ws,
                    {
                        "type": "response_start",
                        "id": request_id,
                        "status": response.status_code,
                        "headers": {
                            key: value
                            for key, value in response.headers.items()
                            if key.lower() not in _HOP_BY_HOP
                        },
                    },
                )
                started = True
                async for chunk in response.aiter_raw():
                    await self._send(
                        ws,
                        {"type": "response_chunk", "id": request_id, "data": base64.b64encode(chunk).decode("ascii")},
                    )
            await self._send(ws, {"type": "response_end", "id": request_id})
        except httpx.HTTPError as exc:
            logger.warning("Tunnel forward %s %s failed: %s", method, path, exc)
            with suppress(websockets.ConnectionClosed):
                if not started:
                    body_bytes = json.dumps({"error": {"kind": "BadGateway", "message": "Local server unavailable"}}).encode()
                    await self._send(
                        ws,
                        {
                            "type": "response_start",
                            "id": request_id,
                            "status": 502,
                            "headers": {"content-type": "application/json"},
                        },
                    )
                    await self._send(
                        ws,
                        {"type": "response_chunk", "id": request_id, "data": base64.b64encode(body_bytes).decode("ascii")},
                    )
                await self._send(ws, {"type": "response_end", "id": request_id})
        except websockets.ConnectionClosed:
            logger.debug("Relay closed while forwarding %s", request_id)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            with suppress(Exception):
                await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for task in list(self._inflight.values()):
            task.cancel()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        self._set_state(TunnelState.CLOSED)


@dataclass
class RelayConfig:
    manifest: Path = Path(DEFAULT_MANIFEST)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    require_auth: bool = False
    token: Optional[str] = field(default=None, repr=False)
    tokens_file: Optional[Path] = None
    transport: str = "http"
    tunnel: bool = True
    relay_url: str = DEFAULT_RELAY_URL
    tunnel_token: Optional[str] = field(default=TUNNEL_TOKEN, repr=False)
    subdomain: Optional[str] = None
    audit_log: Optional[Path] = None
    expensive_tools: Tuple[str, ...] = ()
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    default_timeout: float = DEFAULT_TIMEOUT
    max_timeout: float = MAX_TIMEOUT
    rate_limit: int = DEFAULT_RATE_LIMIT
    expensive_rate_limit: int = DEFAULT_EXPENSIVE_RATE_LIMIT
    reject_extra_arguments: bool = REJECT_EXTRA_ARGUMENTS
    shell_policy: str = SHELL_ARGUMENT_POLICY

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RelayConfig":
        return cls(
            manifest=Path(args.config),
            host=args.host,
            port=args.port,
            require_auth=args.auth,
            token=args.token or os.environ.get("GANTZ_TOKEN"),
            tokens_file=Path(args.tokens) if args.tokens else None,
            transport=args.transport,
            tunnel=args.tunnel and args.transport == "http",
            relay_url=args.relay_url,
            subdomain=args.subdomain,
            audit_log=Path(args.audit_log) if args.audit_log else None,
            expensive_tools=tuple(args.expensive or ()),
            output_limit=args.output_limit,
            default_timeout=args.timeout,
        )


@dataclass
class RelayRuntime:
    relay: ToolRelay
    minted_token: Optional[AuthToken] = None


def build_relay(config: RelayConfig) -> RelayRuntime:
    """Wire registry, sandbox, auth and audit together; raises LoadError."""

    registry = load_manifest(config.manifest)
    redactor = Redactor()
    tokens: List[AuthToken] = []
    if config.tokens_file is not None:
        tokens.extend(load_tokens(config.tokens_file))
    if config.token:
        tokens.append(AuthToken(token_id="cli", value=config.token))

    authorizer = Authorizer(
        tokens,
        require_auth=config.require_auth,
        requests_per_minute=config.rate_limit,
        expensive_per_minute=config.expensive_rate_limit,
        expensive_tools=config.expensive_tools,
        redactor=redactor,
    )
    minted: Optional[AuthToken] = None
    if config.require_auth and not tokens:
        minted = authorizer.issue_token(token_id="default")

    sandbox = ExecutionSandbox(
        secrets=EnvironmentSecretResolver(),
        redactor=redactor,
        output_limit=config.output_limit,
        default_timeout=config.default_timeout,
        max_timeout=config.max_timeout,
        reject_extra_arguments=config.reject_extra_arguments,
        shell_policy=config.shell_policy,
    )
    audit = AuditLog(redactor=redactor, path=config.audit_log)
    relay = ToolRelay(registry, sandbox, authorizer, audit=audit, manifest_path=config.manifest)
    logger.info("Loaded %d tools from %s", len(registry), config.manifest)
    return RelayRuntime(relay=relay, minted_token=minted)


def _bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


def _install_reload_handler(relay: ToolRelay) -> None:
    if not hasattr(signal, "SIGHUP"):
        return

    def _reload() -> None:
        try:
            relay.reload()
        except LoadError as exc:
            logger.error("Reload failed, keeping previous tools: %s", exc)

    with suppress(NotImplementedError, RuntimeError):
        asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, _reload)


async def run_relay(config: RelayConfig, *, out=None) -> int:
    """Serve until interrupted; returns the process exit code."""

    out = out or sys.stdout
    try:
        runtime = build_relay(config)
    except LoadError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_LOAD_ERROR
    relay = runtime.relay

    if config.transport == "stdio":
        session_token = config.token
        if runtime.minted_token is not None:
            # stdout carries the protocol.
            session_token = runtime.minted_token.value
            print(f"Auth token: {session_token}", file=sys.stderr)
        elif config.require_auth and not session_token:
            print("error: --transport stdio with --auth needs --token or GANTZ_TOKEN", file=sys.stderr)
            relay.audit.close()
            return EXIT_USAGE
        try:
            await serve_stdio(relay, session_token)
        finally:
            await relay.sandbox.shutdown()
            relay.audit.close()
        return EXIT_OK

    try:
        sock = _bind_socket(config.host, config.port)
    except OSError as exc:
        print(f"error: cannot bind {config.host}:{config.port}: {exc.strerror or exc}", file=sys.stderr)
        return EXIT_BIND_ERROR

    port = sock.getsockname()[1]
    tunnel: Optional[TunnelClient] = None
    try:
        if config.tunnel:
            tunnel = TunnelClient(
                port,
                relay_url=config.relay_url,
                token=config.tunnel_token,
                subdomain=config.subdomain,
            )
            try:
                public_url = await tunnel.connect()
            except TunnelError as exc:
                print(f"error: {exc}", file=sys.stderr)
                return EXIT_TUNNEL_ERROR
            print(f"Public URL: {public_url}", file=out)
        print(f"Local URL: http://{config.host}:{port}", file=out)
        if runtime.minted_token is not None:
            print(f"Auth token: {runtime.minted_token.value}", file=out)
        elif not config.require_auth:
            print("Auth: disabled (pass --auth to require a bearer token)", file=out)
        out.flush()

        _install_reload_handler(relay)
        server = uvicorn.Server(
            uvicorn.Config(
                create_http_app(relay),
                log_level=logging.getLevelName(logger.getEffectiveLevel()).lower(),
                lifespan="off",
            )
        )
        await server.serve(sockets=[sock])
    finally:
        if tunnel is not None:
            await tunnel.close()
        await relay.sandbox.shutdown()
        relay.audit.close()
        sock.close()
    return EXIT_OK


def _cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(run_relay(RelayConfig.from_args(args)))


def _cmd_validate(args: argparse.Namespace) -> int:
    try:
        registry = load_manifest(args.config)
    except LoadError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_LOAD_ERROR
    print(f"{registry.name} {registry.version}: {len(registry)} tools OK")
    for name in registry:
        print(f"  {name}")
    return EXIT_OK


def _cmd_tools(args: argparse.Namespace) -> int:
    try:
        registry = load_manifest(args.config)
    except LoadError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_LOAD_ERROR
    print(json.dumps({"tools": registry.schemas()}, indent=2))
    return EXIT_OK


def _cmd_token(args: argparse.Namespace) -> int:
    operations = {"read"} if args.read_only else ALL_SCOPES
    token = mint_token(token_id=args.id, operations=operations, tools=args.tool or None)
    entry = token.to_entry()
    entry.pop("issuedAt")
    print(yaml.safe_dump({"tokens": [entry]}, sort_keys=False).rstrip())
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gantz-relay",
        description="Expose local tools to AI clients over MCP",
    )
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level (default: %(default)s)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Serve the manifest's tools")
    run.add_argument("--config", "-c", default=DEFAULT_MANIFEST, help="Tool manifest (default: %(default)s)")
    run.add_argument("--host", default=DEFAULT_HOST)
    run.add_argument("--port", "-p", type=int, default=DEFAULT_PORT)
    run.add_argument("--auth", action="store_true", help="Require a bearer token")
    run.add_argument("--token", help="Accept this bearer token (also GANTZ_TOKEN)")
    run.add_argument("--tokens", help="YAML/JSON file with scoped tokens")
    run.add_argument("--transport", choices=("http", "stdio"), default="http")
    run.add_argument("--no-tunnel", dest="tunnel", action="store_false", help="Serve locally only")
    run.add_argument("--relay-url", default=DEFAULT_RELAY_URL)
    run.add_argument("--subdomain", help="Request a stable public subdomain")
    run.add_argument("--audit-log", help="Append JSON audit records to this file")
    run.add_argument("--expensive", action="append", metavar="TOOL", help="Apply the expensive-tool rate limit")
    run.add_argument("--output-limit", type=int, default=DEFAULT_OUTPUT_LIMIT, help="Bytes kept per output stream")
    run.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Default tool timeout in seconds")
    run.set_defaults(handler=_cmd_run)

    validate = sub.add_parser("validate", help="Check a manifest and exit")
    validate.add_argument("--config", "-c", default=DEFAULT_MANIFEST)
    validate.set_defaults(handler=_cmd_validate)

    tools = sub.add_parser("tools", help="Print the tool schemas clients will see")
    tools.add_argument("--config", "-c", default=DEFAULT_MANIFEST)
    tools.set_defaults(handler=_cmd_tools)

    token = sub.add_parser("token", help="Mint a token entry for a tokens file")
    token.add_argument("--id", help="Identifier used in audit logs")
    token.add_argument("--tool", action="append", help="Restrict the token to this tool (repeatable)")
    token.add_argument("--read-only", action="store_true", help="Allow listing tools but not calling them")
    token.set_defaults(handler=_cmd_token)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        return args.handler(args)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE


def cli() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(EXIT_OK)


if __name__ == "__main__":
    cli()
