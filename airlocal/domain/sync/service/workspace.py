"""Per-run workspace: the temporary directory mounted into connector containers.

Layout (for the default prefix `airlocal`):
    airlocal-XXXXXXXX/
        airlocal_src_config.json
        airlocal_dst_config.json
        airlocal_src_catalog.json
        airlocal_dst_catalog.json
        state.json
        airlocal_src_output       # spooled source output (buffered handoff)
        src.cid / dst.cid          # container-id markers
"""

import copy
import logging
import os
import stat
import tempfile
from pathlib import Path
from shutil import rmtree
from typing import Any

from airlocal.domain.shared.error import CleanupError
from airlocal.domain.sync.model.run_config import Role, RunConfig
from airlocal.domain.sync.service.state import load_state
from airlocal.util.jsonio import write_json_file

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "airlocal"
STATE_FILENAME = "state.json"


def _force_remove(func, path, exc):
    """rmtree onexc handler: fix permissions left by Docker containers, then retry."""
    os.chmod(path, stat.S_IRWXU)
    func(path)


def _with_sync_modes(catalog: dict[str, Any], full_refresh: bool) -> dict[str, Any]:
    """Normalize configured streams' sync modes.

    Full refresh forces `full_refresh`/`overwrite` on every stream; otherwise a
    missing destination mode is derived from the stream's sync mode.
    """
    streams = catalog.get("streams")
    if not isinstance(streams, list):
        return catalog
    for stream in streams:
        if not isinstance(stream, dict):
            continue
        if full_refresh:
            stream["sync_mode"] = "full_refresh"
            stream["destination_sync_mode"] = "overwrite"
        elif "destination_sync_mode" not in stream and "sync_mode" in stream:
            stream["destination_sync_mode"] = (
                "overwrite" if stream["sync_mode"] == "full_refresh" else "append"
            )
    return catalog


def _with_stream_prefix(catalog: dict[str, Any], prefix: str) -> dict[str, Any]:
    for stream in catalog.get("streams") or []:
        if isinstance(stream, dict) and isinstance(stream.get("stream"), dict):
            name = stream["stream"].get("name")
            if isinstance(name, str):
                stream["stream"]["name"] = f"{prefix}{name}"
    return catalog


def build_catalogs(config: RunConfig) -> tuple[dict[str, Any], dict[str, Any]]:
    """Source and destination catalogs as written to the workspace."""
    src_catalog = copy.deepcopy(config.spec_for(Role.SOURCE).catalog)
    dst_catalog = copy.deepcopy(config.spec_for(Role.DESTINATION).catalog)

    # Keep schemas aligned without requiring the catalog twice
    if not dst_catalog and src_catalog:
        dst_catalog = copy.deepcopy(src_catalog)
        if config.dst_stream_prefix:
            dst_catalog = _with_stream_prefix(dst_catalog, config.dst_stream_prefix)

    return (
        _with_sync_modes(src_catalog, config.full_refresh),
        _with_sync_modes(dst_catalog, config.full_refresh),
    )


class Workspace:
    """An exclusively-owned temporary directory for one run."""

    def __init__(self, path: Path, prefix: str = DEFAULT_PREFIX) -> None:
        self.path = path
        self.prefix = prefix

    @classmethod
    def create(cls, base_dir: Path | None = None, prefix: str = DEFAULT_PREFIX) -> "Workspace":
        if base_dir is not None:
            base_dir.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=f"{prefix}-", dir=base_dir))
        # Connector images often run as a non-root user
        path.chmod(0o777)
        logger.debug("Created workspace %s", path)
        return cls(path, prefix)

    # -------------------------------------------------------------------------
    # File names
    # -------------------------------------------------------------------------

    def config_filename(self, role: Role) -> str:
        return f"{self.prefix}_{role.tag}_config.json"

    def catalog_filename(self, role: Role) -> str:
        return f"{self.prefix}_{role.tag}_catalog.json"

    @property
    def reference_filename(self) -> str:
        return f"{self.prefix}_config.json"

    @property
    def state_file(self) -> Path:
        return self.path / STATE_FILENAME

    @property
    def src_output_file(self) -> Path:
        return self.path / f"{self.prefix}_src_output"

    def cid_file(self, role: Role) -> Path:
        return self.path / f"{role.tag}.cid"

    # -------------------------------------------------------------------------
    # Generated inputs
    # -------------------------------------------------------------------------

    def write_config(self, config: RunConfig, reference_dir: Path | None = None) -> None:
        """Write per-role config and catalog files plus the operator reference file."""
        for role in Role:
            write_json_file(self.path / self.config_filename(role), config.spec_for(role).config)

        src_catalog, dst_catalog = build_catalogs(config)
        write_json_file(self.path / self.catalog_filename(Role.SOURCE), src_catalog)
        write_json_file(self.path / self.catalog_filename(Role.DESTINATION), dst_catalog)

        reference = {
            "src": config.spec_for(Role.SOURCE).as_reference(),
            "dst": config.spec_for(Role.DESTINATION).as_reference(),
        }
        reference_path = (reference_dir or Path.cwd()) / self.reference_filename
        write_json_file(reference_path, reference)
        logger.debug("Wrote connector files to %s (reference copy: %s)", self.path, reference_path)

    def load_state(self, config: RunConfig) -> Any:
        """Copy the prior state into the workspace and return it.

        Full refresh always starts from `{}` and never reads the state file.
        """
        if config.full_refresh:
            state: Any = {}
        else:
            state = load_state(config.resolved_state_file, required=config.state_file_is_explicit)
        write_json_file(self.state_file, state)
        return state

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def remove(self) -> None:
        try:
            rmtree(self.path, onexc=_force_remove)
        except FileNotFoundError:
            return
        except OSError as e:
            raise CleanupError(f"Failed to remove workspace {self.path}: {e}") from e
        logger.debug("Removed workspace %s", self.path)
