"""Source connection check.

Runs `check --config /configs/<src_config>` and inspects the CONNECTION_STATUS
message, e.g.:

    {"connectionStatus":{"status":"SUCCEEDED"},"type":"CONNECTION_STATUS"}
    {"connectionStatus":{"status":"FAILED","message":"API key was not provided"},"type":"CONNECTION_STATUS"}
"""

import logging

from airlocal.domain.shared.error import ConfigInvalid, ConnectionCheckFailed
from airlocal.domain.sync.model.message import ConnectionStatus, MessageType
from airlocal.domain.sync.model.run_config import ConnectorSpec
from airlocal.domain.sync.port.runtime import DEFAULT_PLATFORM, ContainerRuntime, ContainerSpec
from airlocal.domain.sync.service.session import CONFIGS_MOUNT, docker_env
from airlocal.domain.sync.service.stream import parse_message

logger = logging.getLogger(__name__)


def evaluate_connection_check(exit_code: int, output: bytes) -> str | None:
    """Decide the outcome of a captured `check` run.

    Returns the connector's message on success (may be None).

    Raises:
        ConnectionCheckFailed: Unless a SUCCEEDED status was reported and the
            container exited with 0.
    """
    status: str | None = None
    message: str | None = None
    for line in output.splitlines():
        parsed = parse_message(line.strip())
        if parsed is not None and parsed.type is MessageType.CONNECTION_STATUS:
            status, message = parsed.connection_status

    if status == ConnectionStatus.SUCCEEDED and exit_code == 0:
        return message

    if message:
        raise ConnectionCheckFailed(message)
    raw = output.decode("utf-8", errors="replace").strip()
    if raw:
        raise ConnectionCheckFailed(raw)
    raise ConnectionCheckFailed(f"Connection check exited with code {exit_code} and no output")


async def check_connection(
    runtime: ContainerRuntime,
    spec: ConnectorSpec,
    *,
    workspace_dir: str,
    config_filename: str,
    log_level: str = "info",
    platform: str | None = DEFAULT_PLATFORM,
) -> None:
    """Validate the source connector's configuration in a throwaway container."""
    if not spec.image:
        raise ConfigInvalid("Source image is missing.", field="src")

    logger.info("Validating connection to source...")
    container = ContainerSpec(
        image=spec.image,
        command=["check", "--config", f"{CONFIGS_MOUNT}/{config_filename}"],
        binds=[f"{workspace_dir}:{CONFIGS_MOUNT}:rw"],
        env={**docker_env(spec.docker_options), "LOG_LEVEL": log_level},
        limits=spec.limits,
        platform=platform,
    )
    exit_code, output = await runtime.run_and_capture(container)
    evaluate_connection_check(exit_code, output)
    logger.info("Source connection is valid.")
