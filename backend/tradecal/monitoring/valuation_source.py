"""
Valuation market source client.

Fetches the current player/pick value distribution for a league
configuration. Used only by input-drift snapshotting.
"""

from dataclasses import dataclass
from typing import List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from tradecal.config import settings
from tradecal.log_config import logger
from tradecal.utils.errors import ConfigurationError, ValuationSourceError


USER_AGENT = "tradecal/1.0 (calibration drift monitor)"


@dataclass(frozen=True)
class MarketConfig:
    """League configuration the market is priced for."""

    label: str
    is_dynasty: bool
    num_qbs: int
    num_teams: int = 12
    ppr: float = 1.0


@dataclass(frozen=True)
class PlayerValue:
    value: float
    position: str = "UNK"


# Representative configurations snapshotted every drift cycle
DRIFT_MARKET_CONFIGS = (
    MarketConfig(label="dynasty_sf_12", is_dynasty=True, num_qbs=2),
    MarketConfig(label="dynasty_1qb_12", is_dynasty=True, num_qbs=1),
    MarketConfig(label="redraft_1qb_12", is_dynasty=False, num_qbs=1),
)


def create_session(max_retries: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    """
    Create a requests session with retry logic and connection pooling.

    Args:
        max_retries: Maximum number of retries for failed requests
        backoff_factor: Backoff factor for retry delays
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=4, pool_maxsize=4)

    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
    return session


class ValuationSource:
    """HTTP client for the FantasyCalc-style current values endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url or settings.valuation_api_url
        if not self.base_url:
            raise ConfigurationError("valuation_api_url is not set")
        self.timeout = timeout or settings.valuation_timeout_seconds
        self.session = session or create_session(max_retries=settings.valuation_max_retries)

    def fetch_values(self, config: MarketConfig) -> List[PlayerValue]:
        """
        Current value distribution for a configuration.

        Raises:
            ValuationSourceError: request failed or payload was not a list
        """
        params = {
            "isDynasty": str(config.is_dynasty).lower(),
            "numQbs": config.num_qbs,
            "numTeams": config.num_teams,
            "ppr": config.ppr,
        }
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ValuationSourceError(
                f"Valuation fetch failed for {config.label}: {e}",
                details={"config": config.label},
            ) from e

        if not isinstance(payload, list):
            raise ValuationSourceError(
                f"Unexpected valuation payload for {config.label}",
                details={"config": config.label, "type": type(payload).__name__},
            )

        players = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                value = float(item.get("value") or 0)
            except (TypeError, ValueError):
                continue
            player = item.get("player") or {}
            position = player.get("position") if isinstance(player, dict) else None
            players.append(PlayerValue(value=value, position=position or "UNK"))

        logger.debug(f"Fetched {len(players)} values for {config.label}")
        return players
