import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

import distributor.constants as C

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"
log_path = Path("logs")

# env var -> (section, key)
ENV_OVERRIDES = {
    "RPC_URL": ("rippled", "rpc_url"),
    "RELAY_KIND": ("relay", "kind"),
    "GATEWAY_URL": ("relay", "gateway_url"),
    "GATEWAY_API_KEY": ("relay", "api_key"),
    "SIGNER_KIND": ("signer", "kind"),
    "SIGNER_URL": ("signer", "url"),
    "SIGNER_PUBLIC_KEY": ("signer", "public_key"),
    "DB_PATH": ("store", "db_path"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FILE": ("logging", "file"),
}


def load_config(path: str | Path | None = None, env: dict[str, str] | None = None) -> dict:
    """Read config.toml and apply environment overrides on top of it."""
    env = os.environ if env is None else env
    conf = tomllib.loads(Path(path or config_file).read_text())
    for var, (section, key) in ENV_OVERRIDES.items():
        if env.get(var):
            conf.setdefault(section, {})[key] = env[var]
    # Seeds never live in the config file
    conf.setdefault("signer", {})["seed"] = env.get("AUTHORITY_SEED", "")
    return conf


@dataclass(slots=True)
class EngineSettings:
    """Typed knobs for the distribution engine.

    `batch_pause` of None means "derive it from the relay rate ceiling".
    """

    batch_pause: float | None = None
    relay_rate_limit: int = C.RELAY_RATE_LIMIT
    relay_rate_window: float = C.RELAY_RATE_WINDOW
    relay_calls_per_task: int = C.RELAY_CALLS_PER_TASK
    retry_base_delay: float = C.RETRY_BASE_DELAY
    retry_max_delay: float = C.RETRY_MAX_DELAY
    monitor_concurrency: int = C.MONITOR_CONCURRENCY
    repo_write_attempts: int = C.REPO_WRITE_ATTEMPTS
    repo_write_pause: float = C.REPO_WRITE_PAUSE

    @classmethod
    def from_config(cls, conf: dict) -> "EngineSettings":
        eng = conf.get("engine", {})
        pause = eng.get("batch_pause")
        return cls(
            batch_pause=float(pause) if pause is not None else None,
            relay_rate_limit=int(eng.get("relay_rate_limit", C.RELAY_RATE_LIMIT)),
            relay_rate_window=float(eng.get("relay_rate_window", C.RELAY_RATE_WINDOW)),
            relay_calls_per_task=int(eng.get("relay_calls_per_task", C.RELAY_CALLS_PER_TASK)),
            retry_base_delay=float(eng.get("retry_base_delay", C.RETRY_BASE_DELAY)),
            retry_max_delay=float(eng.get("retry_max_delay", C.RETRY_MAX_DELAY)),
            monitor_concurrency=int(eng.get("monitor_concurrency", C.MONITOR_CONCURRENCY)),
            repo_write_attempts=int(eng.get("repo_write_attempts", C.REPO_WRITE_ATTEMPTS)),
            repo_write_pause=float(eng.get("repo_write_pause", C.REPO_WRITE_PAUSE)),
        )

    def pause_for(self, batch_size: int) -> float:
        """Seconds to wait between batches so relay calls stay under the rate ceiling."""
        if self.batch_pause is not None:
            return self.batch_pause
        calls = self.relay_calls_per_task * batch_size
        return calls * self.relay_rate_window / self.relay_rate_limit


cfg = load_config()
