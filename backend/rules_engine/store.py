"""
Rule Store

Process-wide cache of the active rule set.

Lifecycle:
- load() on application start
- refresh() when the configuration source signals a change
- invalidate() to drop the cached snapshot explicitly

A refresh fetches the new configuration in full and then replaces the
cached snapshot with a single reference assignment. Evaluators that read
the snapshot before the swap keep using the old one; nobody ever sees a
half-updated rule list.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from rules_engine.models import RuleSet

logger = logging.getLogger(__name__)


class ConfigurationUnavailable(Exception):
    """The rule configuration could not be loaded, or has not been loaded yet."""
    pass


# ==================== SOURCES ====================

class RuleSource(ABC):
    """Where rule sets come from."""

    @abstractmethod
    async def fetch(self) -> RuleSet:
        """Return the latest active rule set, or raise ConfigurationUnavailable."""
        ...


class StaticRuleSource(RuleSource):
    """
    Rules from an in-process mapping or a JSON file.

    Used by tests and by deployments without a database.
    """

    def __init__(self, config_data: Optional[Mapping[str, Any]] = None, path: Optional[str] = None, version: int = 1):
        self._config_data = dict(config_data) if config_data is not None else None
        self._path = path
        self._version = version

    def update(self, config_data: Mapping[str, Any], version: Optional[int] = None):
        self._config_data = dict(config_data)
        self._version = version if version is not None else self._version + 1

    async def fetch(self) -> RuleSet:
        if self._config_data is not None:
            return RuleSet.from_config(self._config_data, version=self._version)

        if not self._path:
            return RuleSet.build(version=self._version)

        try:
            config_data = json.loads(Path(self._path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigurationUnavailable(f"Cannot read rule file {self._path}: {e}") from e

        return RuleSet.from_config(config_data, version=config_data.get("version_number", self._version))


class SqlRuleSource(RuleSource):
    """
    Rules from the database.

    Eligibility/pricing rules come from the latest active row of
    rule_configurations; matching rules from that configuration plus the
    active rows of bookkeeper_reconciliation_rules.
    """

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    async def fetch(self) -> RuleSet:
        try:
            async with self._session_factory() as db:
                config_result = await db.execute(
                    text("""
                        SELECT version_number, config_data
                        FROM rule_configurations
                        WHERE is_active = true
                        ORDER BY version_number DESC
                        LIMIT 1
                    """)
                )
                config_row = config_result.fetchone()

                rules_result = await db.execute(
                    text("""
                        SELECT id, rule_name, condition_type, params, priority, is_active, jurisdiction
                        FROM bookkeeper_reconciliation_rules
                        WHERE is_active = true
                        ORDER BY priority ASC
                    """)
                )
                rule_rows = rules_result.fetchall()
        except SQLAlchemyError as e:
            raise ConfigurationUnavailable(f"Rule configuration query failed: {e}") from e

        config_data = _json_value(config_row.config_data, strict=True) if config_row else {}
        version = config_row.version_number if config_row else None

        matching_rules: List[Dict[str, Any]] = [
            {
                "id": str(row.id),
                "rule_name": row.rule_name,
                "condition_type": row.condition_type,
                "params": _json_value(row.params),
                "priority": row.priority,
                "is_active": row.is_active,
                "jurisdiction": row.jurisdiction,
            }
            for row in rule_rows
        ]

        return RuleSet.from_config(config_data, version=version, extra_matching_rules=matching_rules)


def _json_value(value: Any, strict: bool = False) -> Dict[str, Any]:
    """
    Decode a JSON object column.

    Anything that is not an object reads as empty, unless `strict`, in which
    case it raises ConfigurationUnavailable.
    """
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError as e:
            if strict:
                raise ConfigurationUnavailable(f"Undecodable rule configuration: {e}") from e
            logger.warning(f"Ignoring undecodable JSON value: {value!r}")
            return {}
    if not isinstance(value, Mapping):
        if strict:
            raise ConfigurationUnavailable("Rule configuration is not a JSON object")
        return {}
    return dict(value)


# ==================== STORE ====================

class RuleStore:
    """
    Holds one immutable RuleSet snapshot for the whole process.

    Readers call snapshot(); writers (load/refresh) are serialized by a lock
    and publish by replacing the reference.
    """

    def __init__(self, source: RuleSource):
        self._source = source
        self._snapshot: Optional[RuleSet] = None
        self._lock = asyncio.Lock()
        self.last_error: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def version(self) -> Optional[int]:
        snapshot = self._snapshot
        return snapshot.version if snapshot else None

    def snapshot(self) -> RuleSet:
        snapshot = self._snapshot
        if snapshot is None:
            raise ConfigurationUnavailable("Rule set not loaded")
        return snapshot

    async def load(self) -> RuleSet:
        return await self.refresh()

    async def refresh(self) -> RuleSet:
        """
        Fetch the latest configuration and swap it in.

        On failure the previous snapshot (if any) stays in place and
        ConfigurationUnavailable is raised.
        """
        async with self._lock:
            try:
                rule_set = await self._source.fetch()
            except ConfigurationUnavailable as e:
                self.last_error = str(e)
                logger.error(f"Rule refresh failed, keeping version {self.version}: {e}")
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"Rule refresh failed, keeping version {self.version}: {e}")
                raise ConfigurationUnavailable(str(e)) from e

            self._snapshot = rule_set
            self.last_error = None

        logger.info(
            f"Rule set loaded: version={rule_set.version} "
            f"eligibility={len(rule_set.eligibility_rules)} matching={len(rule_set.matching_rules)}"
        )
        return rule_set

    async def ensure_loaded(self) -> RuleSet:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        return await self.refresh()

    def invalidate(self):
        """Drop the cached snapshot; the next ensure_loaded() fetches again."""
        self._snapshot = None
        logger.info("Rule set invalidated")

    def status(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        return {
            "loaded": snapshot is not None,
            "last_error": self.last_error,
            **(snapshot.summary() if snapshot else {}),
        }
