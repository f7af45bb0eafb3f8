"""Runtime configuration for the inbox relay."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("appsettings.json")
DEFAULT_JOURNAL_PATH = Path(".inbox_relay.db")
DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (".*", "*.tmp", "*.part", "~*")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(ValueError):
    """Missing or invalid configuration. Fatal at startup."""


class UnrecognizedPolicy(str, Enum):
    """Where files with an unrecognized extension are routed."""

    REJECT = "reject"
    PASS_THROUGH = "pass_through"
    IGNORE = "ignore"


class InvokerBackend(str, Enum):
    """How the external tool is driven."""

    CLI = "cli"
    KEYSTROKE = "keystroke"


@dataclass(slots=True)
class WatchSettings:
    """Stage directories and per-file pipeline settings."""

    input_dir: Path | None = None
    processing_dir: Path | None = None
    output_dir: Path | None = None
    error_dir: Path | None = None
    ignored_dir: Path | None = None
    retry_count: int = 3
    retry_delay_seconds: float = 2.0
    recognized_extensions: tuple[str, ...] = (".txt",)
    unrecognized_policy: UnrecognizedPolicy = UnrecognizedPolicy.REJECT
    stability_attempts: int = 10
    stability_delay_seconds: float = 0.5
    ignore_patterns: tuple[str, ...] = DEFAULT_IGNORE_PATTERNS
    scan_existing_on_start: bool = True
    use_polling: bool = False
    worker_count: int = 4
    queue_size: int = 256


@dataclass(slots=True)
class ToolSettings:
    """External tool location and invocation contract."""

    executable: str = "java"
    launcher_args: tuple[str, ...] = ("-jar",)
    resource_path: Path | None = None
    working_dir: Path | None = None
    output_dir: Path | None = None
    timeout_ms: int = 600_000
    sidecar_extension: str = ".csi"
    backend: InvokerBackend = InvokerBackend.CLI

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(slots=True)
class KeystrokeSettings:
    """Timers for the legacy GUI keystroke backend."""

    gui_wait_ms: int = 5_000
    key_wait_ms: int = 500
    run_wait_ms: int = 10_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    watch: WatchSettings = field(default_factory=WatchSettings)
    tool: ToolSettings = field(default_factory=ToolSettings)
    keystroke: KeystrokeSettings = field(default_factory=KeystrokeSettings)
    journal_path: Path | None = DEFAULT_JOURNAL_PATH
    log_level: str = "INFO"

    @property
    def tool_output_dir(self) -> Path | None:
        """Directory handed to the tool for its result artifacts."""

        return self.tool.output_dir or self.watch.output_dir

    @classmethod
    def from_file(cls, config_path: Path | None = None) -> Settings:
        """Load settings from a JSON settings file with ``INBOX_RELAY_*`` env overrides.

        Relative paths in the file are resolved against the file's directory.
        """

        path = config_path or Path(os.getenv("INBOX_RELAY_CONFIG", str(DEFAULT_CONFIG_PATH)))
        if not path.is_file():
            raise ConfigError(f"Settings file not found: {path}")
        try:
            raw = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ConfigError(f"Settings file is not valid JSON: {path}: {error}") from error
        if not isinstance(raw, dict):
            raise ConfigError(f"Settings file must contain a JSON object: {path}")
        return cls.from_mapping(raw, base_dir=path.resolve().parent)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any], *, base_dir: Path | None = None) -> Settings:
        """Build settings from an already-parsed settings document."""

        base = base_dir or Path.cwd()
        watch_raw = _section(raw, "WatchSettings")
        tool_raw = _section(raw, "ToolSettings") or _legacy_java_section(raw)
        keys_raw = _section(raw, "KeystrokeSettings")

        def path_opt(section: dict[str, Any], key: str, env: str) -> Path | None:
            return _parse(section, key, env, default=None, parser=lambda v: _as_path(v, base))

        input_dir = path_opt(watch_raw, "InputDirectory", "INBOX_RELAY_INPUT_DIRECTORY")
        watch = WatchSettings(
            input_dir=input_dir,
            processing_dir=path_opt(
                watch_raw, "ProcessingDirectory", "INBOX_RELAY_PROCESSING_DIRECTORY"
            ),
            output_dir=path_opt(watch_raw, "OutputDirectory", "INBOX_RELAY_OUTPUT_DIRECTORY"),
            error_dir=path_opt(watch_raw, "ErrorDirectory", "INBOX_RELAY_ERROR_DIRECTORY"),
            ignored_dir=path_opt(watch_raw, "IgnoredDirectory", "INBOX_RELAY_IGNORED_DIRECTORY"),
            retry_count=_parse(
                watch_raw, "RetryCount", "INBOX_RELAY_RETRY_COUNT", default=3, parser=_as_int
            ),
            retry_delay_seconds=_parse(
                watch_raw,
                "RetryDelaySeconds",
                "INBOX_RELAY_RETRY_DELAY_SECONDS",
                default=2.0,
                parser=_as_float,
            ),
            recognized_extensions=_parse(
                watch_raw,
                "RecognizedExtensions",
                "INBOX_RELAY_RECOGNIZED_EXTENSIONS",
                default=(".txt",),
                parser=_as_extensions,
            ),
            unrecognized_policy=_parse(
                watch_raw,
                "UnrecognizedPolicy",
                "INBOX_RELAY_UNRECOGNIZED_POLICY",
                default=UnrecognizedPolicy.REJECT,
                parser=lambda v: _as_enum(UnrecognizedPolicy, v, "UnrecognizedPolicy"),
            ),
            stability_attempts=_parse(
                watch_raw,
                "StabilityAttempts",
                "INBOX_RELAY_STABILITY_ATTEMPTS",
                default=10,
                parser=_as_int,
            ),
            stability_delay_seconds=_parse(
                watch_raw,
                "StabilityDelayMs",
                "INBOX_RELAY_STABILITY_DELAY_MS",
                default=0.5,
                parser=lambda v: _as_int(v) / 1000.0,
            ),
            ignore_patterns=_parse(
                watch_raw,
                "IgnorePatterns",
                "INBOX_RELAY_IGNORE_PATTERNS",
                default=DEFAULT_IGNORE_PATTERNS,
                parser=_as_str_tuple,
            ),
            scan_existing_on_start=_parse(
                watch_raw,
                "ScanExistingOnStart",
                "INBOX_RELAY_SCAN_EXISTING_ON_START",
                default=True,
                parser=_as_bool,
            ),
            use_polling=_parse(
                watch_raw, "UsePolling", "INBOX_RELAY_USE_POLLING", default=False, parser=_as_bool
            ),
            worker_count=_parse(
                watch_raw, "WorkerCount", "INBOX_RELAY_WORKER_COUNT", default=4, parser=_as_int
            ),
            queue_size=_parse(
                watch_raw, "QueueSize", "INBOX_RELAY_QUEUE_SIZE", default=256, parser=_as_int
            ),
        )
        tool = ToolSettings(
            executable=_parse(
                tool_raw, "Executable", "INBOX_RELAY_TOOL_EXECUTABLE", default="java", parser=str
            ),
            launcher_args=_parse(
                tool_raw,
                "LauncherArgs",
                "INBOX_RELAY_TOOL_LAUNCHER_ARGS",
                default=("-jar",),
                parser=_as_str_tuple,
            ),
            resource_path=path_opt(tool_raw, "ResourcePath", "INBOX_RELAY_TOOL_RESOURCE_PATH"),
            working_dir=path_opt(
                tool_raw, "WorkingDirectory", "INBOX_RELAY_TOOL_WORKING_DIRECTORY"
            ),
            output_dir=path_opt(tool_raw, "OutputDirectory", "INBOX_RELAY_TOOL_OUTPUT_DIRECTORY"),
            timeout_ms=_parse(
                tool_raw,
                "ProcessTimeoutMs",
                "INBOX_RELAY_PROCESS_TIMEOUT_MS",
                default=600_000,
                parser=_as_int,
            ),
            sidecar_extension=_parse(
                tool_raw,
                "SidecarExtension",
                "INBOX_RELAY_SIDECAR_EXTENSION",
                default=".csi",
                parser=str,
            ),
            backend=_parse(
                tool_raw,
                "Backend",
                "INBOX_RELAY_TOOL_BACKEND",
                default=InvokerBackend.CLI,
                parser=lambda v: _as_enum(InvokerBackend, v, "Backend"),
            ),
        )
        keystroke = KeystrokeSettings(
            gui_wait_ms=_parse(keys_raw, "GuiWaitMs", "", default=5_000, parser=_as_int),
            key_wait_ms=_parse(keys_raw, "KeyWaitMs", "", default=500, parser=_as_int),
            run_wait_ms=_parse(keys_raw, "RunWaitMs", "", default=10_000, parser=_as_int),
        )
        journal_raw = os.getenv("INBOX_RELAY_JOURNAL_PATH", raw.get("JournalPath"))
        if journal_raw is None:
            journal_path: Path | None = base / DEFAULT_JOURNAL_PATH
        elif str(journal_raw).strip() == "":
            journal_path = None
        else:
            journal_path = _as_path(journal_raw, base)

        return cls(
            watch=watch,
            tool=tool,
            keystroke=keystroke,
            journal_path=journal_path,
            log_level=str(os.getenv("INBOX_RELAY_LOG_LEVEL", raw.get("LogLevel", "INFO"))).upper(),
        )

    def validate(self) -> None:
        """Raise ``ConfigError`` if the settings cannot drive a watcher."""

        watch = self.watch
        for key, value in (
            ("InputDirectory", watch.input_dir),
            ("ProcessingDirectory", watch.processing_dir),
            ("OutputDirectory", watch.output_dir),
            ("ErrorDirectory", watch.error_dir),
        ):
            if value is None:
                raise ConfigError(f"WatchSettings:{key} is required.")
        if watch.retry_count < 1:
            raise ConfigError("WatchSettings:RetryCount must be >= 1.")
        if watch.retry_delay_seconds < 0:
            raise ConfigError("WatchSettings:RetryDelaySeconds must be >= 0.")
        if watch.stability_attempts < 0 or watch.stability_delay_seconds < 0:
            raise ConfigError("WatchSettings stability settings must be >= 0.")
        if watch.worker_count < 1:
            raise ConfigError("WatchSettings:WorkerCount must be >= 1.")
        if watch.queue_size < 1:
            raise ConfigError("WatchSettings:QueueSize must be >= 1.")
        if watch.unrecognized_policy is UnrecognizedPolicy.IGNORE and watch.ignored_dir is None:
            raise ConfigError(
                "WatchSettings:IgnoredDirectory is required when UnrecognizedPolicy is 'ignore'.",
            )
        stage_dirs = [watch.input_dir, watch.processing_dir, watch.output_dir, watch.error_dir]
        resolved = {path.resolve() for path in stage_dirs if path is not None}
        if len(resolved) != len(stage_dirs):
            raise ConfigError("Input, Processing, Output and Error directories must be distinct.")
        if self.tool.timeout_ms <= 0:
            raise ConfigError("ToolSettings:ProcessTimeoutMs must be > 0.")
        if not self.tool.executable.strip():
            raise ConfigError("ToolSettings:Executable must not be empty.")
        if self.tool.backend is InvokerBackend.KEYSTROKE and watch.worker_count != 1:
            raise ConfigError("WatchSettings:WorkerCount must be 1 with the keystroke backend.")
        if self.keystroke.gui_wait_ms <= 0:
            raise ConfigError("KeystrokeSettings:GuiWaitMs must be > 0.")
        if self.keystroke.key_wait_ms < 0 or self.keystroke.run_wait_ms < 0:
            raise ConfigError("KeystrokeSettings wait settings must be >= 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ConfigError(f"Unsupported LogLevel: {self.log_level!r}")


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Settings section {name!r} must be an object.")
    return value


def _legacy_java_section(raw: dict[str, Any]) -> dict[str, Any]:
    java = _section(raw, "JavaSettings")
    if not java:
        return {}
    translated: dict[str, Any] = {"Executable": java.get("JavaPath", "java")}
    if "JarPath" in java:
        translated["ResourcePath"] = java["JarPath"]
    if "UtilityDir" in java:
        translated["WorkingDirectory"] = java["UtilityDir"]
    for key in ("ProcessTimeoutMs", "SidecarExtension", "Backend", "OutputDirectory"):
        if key in java:
            translated[key] = java[key]
    return translated


def _parse(
    section: dict[str, Any],
    key: str,
    env_name: str,
    *,
    default: Any,
    parser: Callable[[Any], Any],
) -> Any:
    value = os.getenv(env_name) if env_name else None
    if value is None:
        value = section.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    try:
        return parser(value)
    except ConfigError:
        raise
    except (TypeError, ValueError) as error:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from error


def _as_path(value: Any, base: Path) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base / path


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    return int(value)


def _as_float(value: Any) -> float:
    return float(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list | tuple):
        items = [str(item) for item in value]
    else:
        raise ValueError(f"Expected a list or comma-separated string: {value!r}")
    return tuple(item.strip() for item in items if item.strip())


def _as_extensions(value: Any) -> tuple[str, ...]:
    extensions = []
    for item in _as_str_tuple(value):
        normalized = item.lower()
        extensions.append(normalized if normalized.startswith(".") else f".{normalized}")
    return tuple(extensions)


def _as_enum(enum_type: type[Enum], value: Any, key: str) -> Any:
    try:
        return enum_type(str(value).strip().lower())
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise ConfigError(f"Unsupported {key} {value!r}; expected one of: {allowed}") from error
