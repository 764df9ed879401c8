import json
import logging
import os
import re
from typing import List, Optional

from resolvers.extractors import GENERIC, ExtractionStrategy, PatternStrategy

logger = logging.getLogger(__name__)


def load_strategies(path: Optional[str]) -> List[ExtractionStrategy]:
    """
    extractors.json format:
      {"streamhg": {"hosts": ["streamhg", "hglink"], "playlist_pattern": "...", "limit": 2}, ...}
    """
    if not path or not os.path.exists(path):
        return []
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.exception("Error reading extraction strategies from %s", path)
        return []

    strategies: List[ExtractionStrategy] = []
    for tag, conf in (data or {}).items():
        if not isinstance(conf, dict):
            continue
        try:
            strategies.append(PatternStrategy.from_config(tag, conf))
        except (AttributeError, TypeError, ValueError, re.error) as e:
            logger.warning("Skipping extraction strategy %s: %s", tag, e)
    return strategies


class StrategyRegistry:
    def __init__(self, strategies: Optional[List[ExtractionStrategy]] = None,
                 fallback: ExtractionStrategy = GENERIC):
        self._strategies = list(strategies or [])
        self._fallback = fallback

    def register(self, strategy: ExtractionStrategy) -> None:
        self._strategies.append(strategy)

    def pick_strategy_for(self, hostname: str) -> ExtractionStrategy:
        host = (hostname or "").lower()
        for strategy in self._strategies:
            if strategy.matches(host):
                return strategy
        return self._fallback
