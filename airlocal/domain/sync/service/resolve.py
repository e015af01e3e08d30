"""Option bag -> RunConfig boundary.

The CLI produces an untyped mapping of option names to values. This module is the
single place where that mapping is validated and turned into a RunConfig; nothing
downstream looks at raw options.

Merge priority per connector (highest first):
1. dotted per-key overrides (`--src.<key> <value>`), applied in argument order
2. the connector config file (`--config-file`)
3. built-in defaults
"""

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from airlocal.domain.shared.error import ConfigInvalid
from airlocal.domain.sync.model.run_config import (
    STDOUT,
    ConnectorSpec,
    LogLevel,
    ResourceLimits,
    RunConfig,
)
from airlocal.util.jsonio import read_json_file

logger = logging.getLogger(__name__)

# Reference file written into the working directory (see Workspace.write_config)
REFERENCE_FILE_HINT = "<prefix>_config.json"


class ConnectorFileEntry(BaseModel):
    """One side (`src` or `dst`) of a connector config file."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    image: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    catalog: dict[str, Any] = Field(default_factory=dict)
    docker_options: str | None = Field(default=None, alias="dockerOptions")


class ConnectorFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    src: ConnectorFileEntry | None = None
    dst: ConnectorFileEntry | None = None


# =============================================================================
# Dotted overrides
# =============================================================================


def parse_override_value(raw: str) -> Any:
    """Parse an override value as JSON, falling back to the raw string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def apply_override(target: dict[str, Any], path: str, raw: str) -> None:
    """Set `target[a][b][c] = value` for path "a.b.c", creating objects on the way."""
    keys = [k for k in path.split(".") if k]
    if not keys:
        raise ConfigInvalid(f"Invalid config override key '{path}'", field=path)

    current = target
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = parse_override_value(raw)


def merge_overrides(base: dict[str, Any], overrides: Iterable[tuple[str, str]]) -> dict[str, Any]:
    """Apply overrides in order on a deep copy of `base`."""
    merged = json.loads(json.dumps(base))
    for path, raw in overrides:
        apply_override(merged, path, raw)
    return merged


# =============================================================================
# Config file
# =============================================================================


def parse_config_file(path: Path) -> ConnectorFile:
    """Read and validate a connector config file."""
    try:
        data = read_json_file(path)
    except FileNotFoundError:
        raise ConfigInvalid(f"Config file '{path}' not found", field="config_file")
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ConfigInvalid(f"Failed to read or parse config file '{path}': {e}", field="config_file")

    try:
        return ConnectorFile.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigInvalid(
            "Invalid config file json format. Please check if it contains invalid properties: "
            + "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()),
            field="config_file",
        )


def _load_catalog(options: Mapping[str, Any], tag: str) -> dict[str, Any] | None:
    """Catalog given inline (`--src-catalog-json`) or as a file (`--src-catalog-file`)."""
    inline = options.get(f"{tag}_catalog_json")
    file = options.get(f"{tag}_catalog_file")
    if inline and file:
        raise ConfigInvalid(
            f"'--{tag}-catalog-json' and '--{tag}-catalog-file' cannot be used together",
            field=f"{tag}_catalog",
        )
    try:
        if inline:
            catalog = json.loads(inline)
        elif file:
            catalog = read_json_file(Path(file))
        else:
            return None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ConfigInvalid(f"Failed to read {tag} catalog: {e}", field=f"{tag}_catalog")
    if not isinstance(catalog, dict):
        raise ConfigInvalid(f"The {tag} catalog must be a JSON object", field=f"{tag}_catalog")
    return catalog


# =============================================================================
# Scalar options
# =============================================================================


def _limits(options: Mapping[str, Any]) -> ResourceLimits:
    try:
        max_mem = options.get("max_mem")
        max_cpus = options.get("max_cpus")
        return ResourceLimits(
            max_memory_mb=int(max_mem) if max_mem not in (None, "") else None,
            max_cpus=float(max_cpus) if max_cpus not in (None, "") else None,
            max_log_size=options.get("max_log_size") or "10m",
        )
    except (TypeError, ValueError) as e:
        raise ConfigInvalid(f"Invalid resource limit: {e}", field="limits")


def _log_level(options: Mapping[str, Any]) -> LogLevel:
    if options.get("debug"):
        return LogLevel.DEBUG
    raw = str(options.get("log_level") or LogLevel.INFO).lower()
    try:
        return LogLevel(raw)
    except ValueError:
        choices = ", ".join(level.value for level in LogLevel)
        raise ConfigInvalid(f"Invalid log level '{raw}'. Choose one of: {choices}", field="log_level")


def _first(options: Mapping[str, Any], *names: str) -> Any:
    """First non-None value among option names (current name first, then aliases)."""
    for name in names:
        value = options.get(name)
        if value is not None:
            return value
    return None


def _flag(options: Mapping[str, Any], name: str, default: bool) -> bool:
    value = options.get(name)
    return default if value is None else bool(value)


def _validate_modes(options: Mapping[str, Any]) -> None:
    src_only = bool(options.get("src_only"))
    output_file = options.get("src_output_file")
    dst_only = options.get("dst_only")
    check = bool(_first(options, "src_check_connection", "check_connection"))

    if src_only and output_file:
        raise ConfigInvalid(
            "'--src-only' and '--src-output-file' cannot be used together. "
            "Use '--src-output-file' alone to write the source output to a file.",
            field="src_only",
        )
    if output_file and output_file != STDOUT and not Path(output_file).parent.is_dir():
        raise ConfigInvalid(
            f"Directory for source output file '{output_file}' does not exist",
            field="src_output_file",
        )
    if dst_only:
        conflicts = [
            name
            for name, present in (
                ("--src-only", src_only),
                ("--src-output-file", bool(output_file)),
                ("--src-check-connection", check),
            )
            if present
        ]
        if conflicts:
            raise ConfigInvalid(
                f"'--dst-only' cannot be used together with {', '.join(conflicts)}",
                field="dst_only",
            )
        if not Path(dst_only).is_file():
            raise ConfigInvalid(f"Destination input file '{dst_only}' not found", field="dst_only")


def _validate_images(config: RunConfig, from_file: bool) -> None:
    if config.runs_source and not (config.src and config.src.image):
        if from_file:
            raise ConfigInvalid(
                "Missing source image. Please make sure you provide it in the config file.",
                field="src",
            )
        raise ConfigInvalid(
            "Missing source image. Please use '--src <image>' to provide the source image",
            field="src",
        )
    if config.runs_destination and not (config.dst and config.dst.image):
        if from_file:
            raise ConfigInvalid(
                "Missing destination image. Please make sure you provide it in the config file.",
                field="dst",
            )
        raise ConfigInvalid(
            "Missing destination image. Please use '--dst <image>' to provide the destination image",
            field="dst",
        )


# =============================================================================
# Boundary
# =============================================================================


def resolve_run_config(options: Mapping[str, Any]) -> RunConfig:
    """Validate the option bag and build the RunConfig.

    Raises:
        ConfigInvalid: On missing, conflicting or malformed inputs.
    """
    config_file = options.get("config_file")
    src_overrides = list(options.get("src_overrides") or [])
    dst_overrides = list(options.get("dst_overrides") or [])
    inline = bool(options.get("src") or options.get("dst") or src_overrides or dst_overrides)

    if config_file and inline:
        raise ConfigInvalid(
            "'--config-file' cannot be combined with '--src', '--dst' or "
            "'--src.<key>'/'--dst.<key>' options",
            field="config_file",
        )
    if not config_file and not inline:
        raise ConfigInvalid(
            "Configuration options are missing. Please provide one of the following options: "
            "'--config-file', or '--src' and '--dst' to configure the connectors.",
        )
    _validate_modes(options)

    if config_file:
        logger.info("Reading config file %s", config_file)
        parsed = parse_config_file(Path(config_file))
        src_entry = parsed.src or ConnectorFileEntry()
        dst_entry = parsed.dst or ConnectorFileEntry()
    else:
        src_entry = ConnectorFileEntry(image=options.get("src") or "")
        dst_entry = ConnectorFileEntry(image=options.get("dst") or "")
        if src_overrides or dst_overrides:
            logger.warning(
                "Options '--src.<key> <value>' and '--dst.<key> <value>' are deprecated. "
                "Please use '--config-file' instead. An equivalent configuration file is "
                "written to %s in the working directory.",
                REFERENCE_FILE_HINT,
            )

    limits = _limits(options)

    def build(entry: ConnectorFileEntry, tag: str, overrides: list[tuple[str, str]]) -> ConnectorSpec:
        catalog = _load_catalog(options, tag)
        return ConnectorSpec(
            image=entry.image,
            config=merge_overrides(entry.config, overrides),
            catalog=catalog if catalog is not None else entry.catalog,
            docker_options=options.get(f"{tag}_docker_options") or entry.docker_options,
            limits=limits,
        )

    src = build(src_entry, "src", src_overrides)
    dst = build(dst_entry, "dst", dst_overrides)

    src_only = bool(options.get("src_only"))
    dst_only = options.get("dst_only")
    state_file = _first(options, "state_file", "state")

    config = RunConfig(
        src=src,
        dst=dst,
        full_refresh=bool(options.get("full_refresh")),
        raw_messages=bool(options.get("raw_messages")),
        state_file=Path(state_file) if state_file else None,
        connection_name=options.get("connection_name") or None,
        src_only=src_only,
        src_output_file=STDOUT if src_only else (options.get("src_output_file") or None),
        dst_only_input_file=Path(dst_only) if dst_only else None,
        src_check_connection=bool(_first(options, "src_check_connection", "check_connection")),
        # Roles that do not run are never pulled
        src_pull=False if dst_only else _flag(options, "src_pull", default=True),
        dst_pull=False
        if (src_only or options.get("src_output_file"))
        else _flag(options, "dst_pull", default=True),
        keep_containers=bool(options.get("keep_containers")),
        log_level=_log_level(options),
        dst_use_host_network=bool(options.get("dst_use_host_network")),
        dst_stream_prefix=options.get("dst_stream_prefix") or None,
        debug=bool(options.get("debug")),
    )

    _validate_images(config, from_file=bool(config_file))
    if (config.runs_source and not src.config) or (config.runs_destination and not dst.config):
        logger.warning("No source or destination config provided. Please make sure this is intended.")

    logger.debug("Resolved run config: mode=%s", config.mode)
    return config
