import logging
import os
import secrets
import sys
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Settings(BaseModel):
    app_name: str = "GitForge"
    app_url: str = "http://localhost:3000/"
    # Loopback address used by the SSH gateway to reach the web process
    local_url: str = "http://127.0.0.1:3000/"
    cors_origins: list[str] = ["http://localhost:3000"]

    work_dir: str = "."
    custom_path: str = "./custom"
    database_url: str = "sqlite+aiosqlite:///./data/gitforge.db"
    repo_root: str = "./repositories"
    temp_path: str = "./data/tmp"
    log_root_path: str = "./log"
    log_level: str = "INFO"

    lfs_start_server: bool = True
    lfs_content_path: str = "./data/lfs"
    lfs_jwt_secret: str = ""

    ssh_disabled: bool = False
    ssh_domain: str = "localhost"
    ssh_port: int = 22

    require_signin_view: bool = False

    max_git_diff_lines: int = 1000
    max_git_diff_line_chars: int = 500
    max_git_diff_files: int = 100
    disable_diff_highlight: bool = False

    git_timeout_default: int = 360
    git_timeout_mirror: int = 300
    git_timeout_pull: int = 300

    webhook_queue_length: int = 1000
    webhook_deliver_timeout: int = 5
    webhook_skip_tls_verify: bool = False
    webhook_paging_num: int = 10

    mirror_queue_length: int = 1000
    mirror_default_interval: int = 8 * 3600  # seconds
    mirror_min_interval: int = 10 * 60  # seconds
    mirror_check_interval: int = 60  # seconds between schedule sweeps

    pull_request_queue_length: int = 1000
    pull_request_merge_style: str = "merge"  # merge, rebase

    internal_token: str = ""
    python_executable: str = sys.executable

    @property
    def lfs_jwt_secret_bytes(self) -> bytes:
        from app.services.lfs_token import decode_jwt_secret

        return decode_jwt_secret(self.lfs_jwt_secret)

    def child_env(self) -> dict[str, str]:
        """Settings that git hooks and helper processes must agree on."""
        return {
            "GITFORGE_WORK_DIR": self.work_dir,
            "GITFORGE_DATABASE_URL": self.database_url,
            "GITFORGE_REPO_ROOT": self.repo_root,
            "GITFORGE_LOG_ROOT": self.log_root_path,
            "GITFORGE_APP_URL": self.app_url,
            "GITFORGE_LOCAL_URL": self.local_url,
            "GITFORGE_LFS_JWT_SECRET": self.lfs_jwt_secret,
            "GITFORGE_INTERNAL_TOKEN": self.internal_token,
        }


def _resolve(work_dir: Path, value: str) -> str:
    path = Path(value)
    if not path.is_absolute():
        path = work_dir / path
    return str(path.resolve())


def load_settings() -> Settings:
    """Build settings from the environment. Relative paths resolve against WORK_DIR."""
    work_dir = Path(os.getenv("GITFORGE_WORK_DIR") or os.getenv("WORK_DIR") or os.getcwd()).resolve()
    custom_path = os.getenv("CUSTOM") or str(work_dir / "custom")

    database_url = os.getenv("GITFORGE_DATABASE_URL")
    if not database_url:
        db_path = work_dir / "data" / "gitforge.db"
        database_url = f"sqlite+aiosqlite:///{db_path}"

    lfs_jwt_secret = os.getenv("GITFORGE_LFS_JWT_SECRET", "")
    if not lfs_jwt_secret:
        lfs_jwt_secret = secrets.token_urlsafe(32).rstrip("=")
        logger.warning("GITFORGE_LFS_JWT_SECRET is not set, generated a per-process secret")

    internal_token = os.getenv("GITFORGE_INTERNAL_TOKEN", "")
    if not internal_token:
        internal_token = secrets.token_hex(32)
        logger.warning("GITFORGE_INTERNAL_TOKEN is not set, generated a per-process token")

    app_url = os.getenv("GITFORGE_APP_URL", "http://localhost:3000/")
    if not app_url.endswith("/"):
        app_url += "/"
    local_url = os.getenv("GITFORGE_LOCAL_URL", "http://127.0.0.1:3000/")
    if not local_url.endswith("/"):
        local_url += "/"

    return Settings(
        app_name=os.getenv("GITFORGE_APP_NAME", "GitForge"),
        app_url=app_url,
        local_url=local_url,
        work_dir=str(work_dir),
        custom_path=custom_path,
        database_url=database_url,
        repo_root=_resolve(work_dir, os.getenv("GITFORGE_REPO_ROOT", "repositories")),
        temp_path=_resolve(work_dir, os.getenv("GITFORGE_TEMP_PATH", "data/tmp")),
        log_root_path=_resolve(work_dir, os.getenv("GITFORGE_LOG_ROOT", "log")),
        log_level=os.getenv("GITFORGE_LOG_LEVEL", "INFO"),
        lfs_start_server=_env_bool("GITFORGE_LFS_START_SERVER", True),
        lfs_content_path=_resolve(work_dir, os.getenv("GITFORGE_LFS_CONTENT_PATH", "data/lfs")),
        lfs_jwt_secret=lfs_jwt_secret,
        ssh_disabled=_env_bool("GITFORGE_SSH_DISABLED"),
        ssh_domain=os.getenv("GITFORGE_SSH_DOMAIN", "localhost"),
        ssh_port=_env_int("GITFORGE_SSH_PORT", 22),
        require_signin_view=_env_bool("GITFORGE_REQUIRE_SIGNIN_VIEW"),
        max_git_diff_lines=_env_int("GITFORGE_MAX_DIFF_LINES", 1000),
        max_git_diff_line_chars=_env_int("GITFORGE_MAX_DIFF_LINE_CHARS", 500),
        max_git_diff_files=_env_int("GITFORGE_MAX_DIFF_FILES", 100),
        disable_diff_highlight=_env_bool("GITFORGE_DISABLE_DIFF_HIGHLIGHT"),
        git_timeout_default=_env_int("GITFORGE_GIT_TIMEOUT_DEFAULT", 360),
        git_timeout_mirror=_env_int("GITFORGE_GIT_TIMEOUT_MIRROR", 300),
        git_timeout_pull=_env_int("GITFORGE_GIT_TIMEOUT_PULL", 300),
        webhook_queue_length=_env_int("GITFORGE_WEBHOOK_QUEUE_LENGTH", 1000),
        webhook_deliver_timeout=_env_int("GITFORGE_WEBHOOK_DELIVER_TIMEOUT", 5),
        webhook_skip_tls_verify=_env_bool("GITFORGE_WEBHOOK_SKIP_TLS_VERIFY"),
        webhook_paging_num=_env_int("GITFORGE_WEBHOOK_PAGING_NUM", 10),
        mirror_queue_length=_env_int("GITFORGE_MIRROR_QUEUE_LENGTH", 1000),
        mirror_default_interval=_env_int("GITFORGE_MIRROR_DEFAULT_INTERVAL", 8 * 3600),
        mirror_min_interval=_env_int("GITFORGE_MIRROR_MIN_INTERVAL", 10 * 60),
        mirror_check_interval=_env_int("GITFORGE_MIRROR_CHECK_INTERVAL", 60),
        pull_request_queue_length=_env_int("GITFORGE_PULL_REQUEST_QUEUE_LENGTH", 1000),
        pull_request_merge_style=os.getenv("GITFORGE_PULL_REQUEST_MERGE_STYLE", "merge"),
        internal_token=internal_token,
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()


def configure_logging(settings: Settings, filename: str | None = None) -> None:
    """Set up root logging. Commands that own stdout/stderr log to a file under log_root_path."""
    handlers: list[logging.Handler]
    if filename:
        log_dir = Path(settings.log_root_path)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(log_dir / filename)]
    else:
        handlers = [logging.StreamHandler()]
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=handlers,
        force=True,
    )
