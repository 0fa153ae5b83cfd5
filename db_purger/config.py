import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationInvalid
from .policy import DB_NAME_PLACEHOLDER, GlobalPolicy, merge_policy

DEFAULT_CONFIG_PATH = "./config/config.yaml"

LOG_KEYS = ("log_file", "log_rotate", "log_console")


class RunOptions(BaseModel):
    # run options share the top level of the file with the global policy tier
    model_config = ConfigDict(frozen=True, extra="ignore")

    batch_size: int = Field(default=1000, gt=0)
    statement_timeout: int = Field(default=300, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    dry_run: bool = False
    fail_on_table_error: bool = False


class PurgeConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    policy: GlobalPolicy
    options: RunOptions = Field(default_factory=RunOptions)
    log_file: str = "./purger.log"
    log_rotate: Optional[Dict[str, Any]] = None
    log_console: bool = True

    @model_validator(mode="after")
    def check_targets(self) -> "PurgeConfig":
        if not self.policy.connection_string:
            raise ValueError("connection_string is required")
        if not self.policy.databases:
            raise ValueError("databases must name at least one database")
        if len(self.policy.databases) > 1 and DB_NAME_PLACEHOLDER not in self.policy.connection_string:
            raise ValueError(
                f"connection_string must contain {DB_NAME_PLACEHOLDER} when several databases are configured"
            )
        return self


def describe_validation_error(e: ValidationError) -> str:
    """One "where: what" clause per problem, e.g. databases.billing.tables.invoices.older_than_days."""
    problems = []
    for err in e.errors():
        loc = [str(p) for p in err["loc"]]
        # policy/options are how the flat file is split, not keys the operator wrote
        if loc and loc[0] in ("policy", "options"):
            loc = loc[1:]
        where = ".".join(loc) or "config"
        problems.append(f"{where}: {err['msg']}")
    return "; ".join(problems)


def parse_config(cfg: Dict[str, Any]) -> PurgeConfig:
    """
    Build a validated PurgeConfig from a parsed YAML mapping.

    Every enabled table must resolve to an effective policy here, so policy
    problems surface before any database is touched.
    """
    if not isinstance(cfg, dict):
        raise ConfigurationInvalid(f"config: expected a mapping, got {type(cfg).__name__}")

    raw: Dict[str, Any] = {"policy": cfg, "options": cfg}
    raw.update({k: cfg[k] for k in LOG_KEYS if k in cfg})
    try:
        config = PurgeConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationInvalid(describe_validation_error(e)) from e

    policy = config.policy
    for db_name, db in policy.databases.items():
        if not db.tables:
            logging.warning(f"[CONFIG] databases.{db_name} has no tables configured; nothing will be purged there")
        for table_name, tp in db.tables.items():
            if tp.enable:
                merge_policy(policy, db, tp, table_name=f"{db_name}.{table_name}")

    return config


def load_config(path: str) -> PurgeConfig:
    """
    Load configuration file with support for overriding sensitive configurations via environment variables

    Supported environment variables:
    - DATABASE_CONNECTION_STRING or DB_URI: Connection string template
    - DRY_RUN: Whether to only count eligible rows (true/false, yes/no, 1/0)
    - EXPIRY_DAYS: Global default for older_than_days
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationInvalid(f"cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationInvalid(f"cannot parse config file {path}: {e}")
    if not isinstance(config, dict):
        raise ConfigurationInvalid(f"config file {path} must hold a mapping at the top level")

    db_uri = os.getenv("DATABASE_CONNECTION_STRING") or os.getenv("DB_URI")
    if db_uri:
        config["connection_string"] = db_uri
        logging.info("[CONFIG] Using connection string from environment variables")

    dry_run_env = os.getenv("DRY_RUN")
    if dry_run_env is not None:
        # parsed with the same boolean rules as the file
        config["dry_run"] = dry_run_env
        logging.info(f"[CONFIG] Using environment variable to set dry_run = {dry_run_env}")

    expiry_env = os.getenv("EXPIRY_DAYS")
    if expiry_env is not None:
        config["older_than_days"] = expiry_env
        logging.info(f"[CONFIG] Using environment variable to set older_than_days = {expiry_env}")

    return parse_config(config)


def resolve_config_path(argv=None) -> str:
    if argv:
        return argv[0]
    return os.environ.get("DB_PURGER_CONFIG", DEFAULT_CONFIG_PATH)
