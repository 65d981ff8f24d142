# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

from common.db import DBManager

logger = logging.getLogger(__name__)
CURRENT_VERSION = "v1.0.0"


class Config:
    """
    Process configuration. A non-empty value in the `app_config` table wins
    over the environment (which `.env` has already been loaded into), which
    wins over the built-in default.
    """

    REQUIRED = ("DISCORD_TOKEN", "GUILD_ID")

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        db: Optional[DBManager] = None,
    ):
        self.DB_PATH = os.getenv("DB_PATH", "/data/zonesync.db")
        self.db = db or DBManager(self.DB_PATH, init_schema=True)

        def _get_from_db(key: str):
            try:
                return self.db.get_config(key)
            except Exception:
                return None

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = _get_from_db(key)
            if v is None or (isinstance(v, str) and v.strip() == ""):
                v = os.getenv(key, env_default)
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str) -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                return float(env_default)

        def _opt_int(key: str) -> Optional[int]:
            raw = (_str(key, "") or "").strip()
            if not raw:
                return None
            try:
                return int(raw)
            except ValueError:
                self.logger.warning("[⚠️] %s=%r is not an integer; ignoring", key, raw)
                return None

        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

        self.DISCORD_TOKEN = _str("DISCORD_TOKEN")
        self.GUILD_ID = _opt_int("GUILD_ID")
        self.DEFAULT_DISCORD_CATEGORY_ID = _opt_int("DEFAULT_DISCORD_CATEGORY_ID")

        self.MAX_RETRY_ATTEMPTS = max(0, _int("MAX_RETRY_ATTEMPTS", "3"))
        self.BASE_RETRY_DELAY = max(0.0, _float("BASE_RETRY_DELAY", "1.0"))

        self.WORKER_COUNT = max(1, _int("WORKER_COUNT", "4"))
        self.DEFERRED_SCAN_SECONDS = max(1, _int("DEFERRED_SCAN_SECONDS", "5"))
        self.ROLE_SYNC_INTERVAL_SECONDS = max(60, _int("ROLE_SYNC_INTERVAL_SECONDS", "3600"))

        self.FEED_WS_HOST = _str("FEED_WS_HOST", "0.0.0.0") or "0.0.0.0"
        self.FEED_WS_PORT = _int("FEED_WS_PORT", "8765")
        self.HEALTH_PORT = _int("HEALTH_PORT", "3001")

        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").upper()

        cmd_users_raw = _str("COMMAND_USERS", "") or ""
        self.COMMAND_USERS = []
        for tok in str(cmd_users_raw).split(","):
            tok = tok.strip()
            if tok:
                try:
                    self.COMMAND_USERS.append(int(tok))
                except ValueError:
                    pass

    def validate(self) -> None:
        missing = [k for k in self.REQUIRED if not getattr(self, k, None)]
        if missing:
            for k in missing:
                self.logger.error("[⛔] Missing required configuration: %s", k)
            raise SystemExit(1)
