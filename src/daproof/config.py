# src/daproof/config.py
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from daproof.submitters import Deployment, Environment, get_submitters, parse_deployment, parse_environment

Json = Dict[str, Any]

DEFAULT_BUNDLR_NODE = "https://lens.bundlr.network/"

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


@dataclass(frozen=True)
class VerifierConfig:
    node_url: str
    environment: Environment
    deployment: Deployment

    concurrency: int
    resync: bool

    # Persistence root: SQLite db + failed-proofs/ live under it.
    data_dir: str

    page_size: int
    poll_interval_ms: int
    idle_sleep_ms: int

    # Outbound calls
    request_timeout_s: float
    request_retries: int
    request_retry_delay_ms: int

    # Pending-retry queue
    retry_max_attempts: int
    retry_backoff_base_ms: int
    retry_backoff_cap_ms: int

    failed_write_retry_ms: int

    # Watcher reliability knobs
    error_backoff_min_ms: int
    error_backoff_max_ms: int

    index_url: str
    receipt_url: str

    api_host: str
    api_port: int

    log_level: str

    # Comma-separated addresses trusted in addition to the built-in whitelist.
    extra_submitters: str = ""

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / "daproof.db")

    @property
    def failed_proofs_dir(self) -> str:
        return str(Path(self.data_dir) / "failed-proofs")

    @property
    def extra_submitter_list(self) -> List[str]:
        return [s.strip().lower() for s in str(self.extra_submitters or "").split(",") if s.strip()]


def default_config() -> VerifierConfig:
    return VerifierConfig(
        node_url="",
        environment=Environment.MUMBAI,
        deployment=Deployment.STAGING,
        concurrency=100,
        resync=False,
        data_dir="./daproof_data",
        page_size=1000,
        poll_interval_ms=5_000,
        idle_sleep_ms=200,
        request_timeout_s=5.0,
        request_retries=3,
        request_retry_delay_ms=200,
        retry_max_attempts=5,
        retry_backoff_base_ms=1_000,
        retry_backoff_cap_ms=60_000,
        failed_write_retry_ms=30_000,
        error_backoff_min_ms=250,
        error_backoff_max_ms=10_000,
        index_url=f"{DEFAULT_BUNDLR_NODE}graphql",
        receipt_url=DEFAULT_BUNDLR_NODE,
        api_host="127.0.0.1",
        api_port=0,
        log_level="INFO",
    )


def validate_config(cfg: VerifierConfig) -> None:
    """Fail-fast validation for operator config."""

    if not isinstance(cfg.node_url, str) or not cfg.node_url.strip():
        raise ValueError("node_url must be a non-empty string (--node)")

    # Raises for unsupported environment/deployment pairs.
    get_submitters(cfg.environment, cfg.deployment)

    if int(cfg.concurrency) < 1:
        raise ValueError(f"concurrency must be >= 1; got: {cfg.concurrency}")

    if int(cfg.page_size) < 1:
        raise ValueError(f"page_size must be >= 1; got: {cfg.page_size}")

    if float(cfg.request_timeout_s) <= 0:
        raise ValueError(f"request_timeout_s must be > 0; got: {cfg.request_timeout_s}")

    if int(cfg.request_retries) < 0:
        raise ValueError(f"request_retries must be >= 0; got: {cfg.request_retries}")

    if int(cfg.retry_max_attempts) < 1:
        raise ValueError(f"retry_max_attempts must be >= 1; got: {cfg.retry_max_attempts}")

    if int(cfg.idle_sleep_ms) <= 0 or int(cfg.poll_interval_ms) <= 0:
        raise ValueError("idle_sleep_ms and poll_interval_ms must be > 0")

    if int(cfg.api_port) < 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 0..65535; got: {cfg.api_port}")

    if not isinstance(cfg.data_dir, str) or not cfg.data_dir.strip():
        raise ValueError("data_dir must be a non-empty string")

    for a in cfg.extra_submitter_list:
        if not _ADDRESS_RE.match(a):
            raise ValueError(f"extra_submitters entries must be 0x-prefixed 20-byte addresses; got: {a!r}")


def config_from_mapping(raw: Mapping[str, Any], base: Optional[VerifierConfig] = None) -> VerifierConfig:
    """Overlay a flat mapping (file contents, env, CLI) onto a config.

    Keys that are absent or None keep the base value.
    """
    d = base or default_config()
    known = {f.name for f in fields(VerifierConfig)}
    updates: Json = {}

    for k, v in raw.items():
        if k not in known or v is None:
            continue
        cur = getattr(d, k)
        if k == "extra_submitters" and isinstance(v, (list, tuple)):
            updates[k] = ",".join(str(x) for x in v)
        elif k == "environment":
            updates[k] = parse_environment(v)
        elif k == "deployment":
            updates[k] = parse_deployment(v)
        elif isinstance(cur, bool):
            updates[k] = _as_bool(v, cur)
        elif isinstance(cur, int):
            updates[k] = _as_int(v, cur)
        elif isinstance(cur, float):
            updates[k] = _as_float(v, cur)
        else:
            updates[k] = _as_str(v, cur)

    return replace(d, **updates)


def read_config_file(path: str) -> Json:
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML in {path}: {e}") from e
    else:
        raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("verifier config must be a JSON/YAML object")
    return raw


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> Json:
    """Collect DAPROOF_<FIELD> variables, e.g. DAPROOF_NODE_URL, DAPROOF_CONCURRENCY."""
    env = os.environ if environ is None else environ
    out: Json = {}
    for f in fields(VerifierConfig):
        v = env.get(f"DAPROOF_{f.name.upper()}")
        if v is not None and str(v).strip():
            out[f.name] = v
    return out


def load_config(
    *,
    config_path: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> VerifierConfig:
    """Defaults < config file < DAPROOF_* env < explicit overrides (CLI)."""
    env = os.environ if environ is None else environ
    cfg = default_config()

    p = config_path or env.get("DAPROOF_CONFIG_PATH")
    if p:
        cfg = config_from_mapping(read_config_file(p), cfg)

    cfg = config_from_mapping(config_from_env(env), cfg)

    if overrides:
        cfg = config_from_mapping(overrides, cfg)

    validate_config(cfg)
    return cfg
