import os
import shlex
from dataclasses import dataclass, field

from dotenv import load_dotenv


load_dotenv()


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    if value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    return default


DEFAULT_VOLUMES = (
    "minecraft-world:/server/world",
    "minecraft-mods:/server/mods",
    "minecraft-config:/server/config",
)

DEFAULT_ENV = (
    "EULA=TRUE",
    "MEMORY=4G",
    "MAX_MEMORY=4G",
    "TYPE=FORGE",
    "TZ=UTC",
)


@dataclass(frozen=True)
class Settings:
    docker_base_url: str
    container_name: str
    mc_host: str
    mc_port: int
    mc_query_port: int
    rcon_host: str
    rcon_port: int
    rcon_password: str
    probe_timeout_seconds: float
    rcon_timeout_seconds: float
    readiness_warmup_seconds: float
    readiness_require_healthy: bool
    log_buffer_size: int
    log_tail_lines: int
    subscriber_queue_size: int
    start_settle_seconds: float
    restart_settle_seconds: float
    reattach_delay_seconds: float
    stop_poll_interval_seconds: float
    stop_poll_timeout_seconds: float
    stop_grace_seconds: int
    restart_grace_seconds: int
    swap_stop_grace_seconds: int
    readiness_poll_interval_seconds: float
    readiness_poll_timeout_seconds: float
    reset_settle_seconds: float
    reset_retry_delay_seconds: float
    server_dir: str
    default_image: str
    default_memory_bytes: int
    env_file_path: str
    api_token: str
    auth_cookie_name: str
    log_level: str
    default_volumes: tuple[str, ...] = field(default=DEFAULT_VOLUMES)
    default_env: tuple[str, ...] = field(default=DEFAULT_ENV)
    backup_command: tuple[str, ...] = ("/backup.sh",)

    @property
    def world_dir(self) -> str:
        return os.path.join(self.server_dir, "world")

    @property
    def mods_dir(self) -> str:
        return os.path.join(self.server_dir, "mods")

    @property
    def config_dir(self) -> str:
        return os.path.join(self.server_dir, "config")


def load_settings() -> Settings:
    mc_host = os.getenv("MC_HOST", "minecraft-server")
    mc_port = _get_env_int("MC_PORT", 25565)
    return Settings(
        docker_base_url=os.getenv("DOCKER_BASE_URL", "unix://var/run/docker.sock"),
        container_name=os.getenv("MC_CONTAINER_NAME", "minecraft-server"),
        mc_host=mc_host,
        mc_port=mc_port,
        mc_query_port=_get_env_int("MC_QUERY_PORT", mc_port),
        rcon_host=os.getenv("RCON_HOST", mc_host),
        rcon_port=_get_env_int("RCON_PORT", 25575),
        rcon_password=os.getenv("RCON_PASSWORD", ""),
        probe_timeout_seconds=_get_env_float("PROBE_TIMEOUT_SECONDS", 5.0),
        rcon_timeout_seconds=_get_env_float("RCON_TIMEOUT_SECONDS", 10.0),
        readiness_warmup_seconds=_get_env_float("READINESS_WARMUP_SECONDS", 120.0),
        readiness_require_healthy=_get_env_bool("READINESS_REQUIRE_HEALTHY", True),
        log_buffer_size=_get_env_int("LOG_BUFFER_SIZE", 500),
        log_tail_lines=_get_env_int("LOG_TAIL_LINES", 50),
        subscriber_queue_size=_get_env_int("SUBSCRIBER_QUEUE_SIZE", 1000),
        start_settle_seconds=_get_env_float("START_SETTLE_SECONDS", 2.0),
        restart_settle_seconds=_get_env_float("RESTART_SETTLE_SECONDS", 3.0),
        reattach_delay_seconds=_get_env_float("REATTACH_DELAY_SECONDS", 2.0),
        stop_poll_interval_seconds=_get_env_float("STOP_POLL_INTERVAL_SECONDS", 1.0),
        stop_poll_timeout_seconds=_get_env_float("STOP_POLL_TIMEOUT_SECONDS", 15.0),
        stop_grace_seconds=_get_env_int("STOP_GRACE_SECONDS", 10),
        restart_grace_seconds=_get_env_int("RESTART_GRACE_SECONDS", 10),
        swap_stop_grace_seconds=_get_env_int("SWAP_STOP_GRACE_SECONDS", 30),
        readiness_poll_interval_seconds=_get_env_float("READINESS_POLL_INTERVAL_SECONDS", 5.0),
        readiness_poll_timeout_seconds=_get_env_float("READINESS_POLL_TIMEOUT_SECONDS", 120.0),
        reset_settle_seconds=_get_env_float("RESET_SETTLE_SECONDS", 3.0),
        reset_retry_delay_seconds=_get_env_float("RESET_RETRY_DELAY_SECONDS", 0.5),
        server_dir=os.path.abspath(os.getenv("SERVER_DIR", "/server")),
        default_image=os.getenv("DEFAULT_IMAGE", "minecraft-minecraft:latest"),
        default_memory_bytes=_get_env_int("DEFAULT_MEMORY_BYTES", 4 * 1024 * 1024 * 1024),
        env_file_path=os.getenv("ENV_FILE_PATH", "/app/.env"),
        api_token=os.getenv("API_TOKEN", ""),
        auth_cookie_name=os.getenv("AUTH_COOKIE_NAME", "mcpanel_session"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        backup_command=tuple(shlex.split(os.getenv("BACKUP_COMMAND", "/backup.sh"))),
    )


settings = load_settings()
