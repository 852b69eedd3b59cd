"""Read side of the company research cache."""

import re
from collections.abc import Callable
from datetime import datetime

from shared.clients.store.StoreClientInterface import StoreClientInterface
from shared.errors.engine_errors import InvalidInputError
from shared.helper.HelperConfig import HelperConfig
from shared.models.knowledge import CompanyResearchEntry, utc_now

_WHITESPACE = re.compile(r"\s+")


def _normalize_part(value: str | None) -> str:
    return _WHITESPACE.sub(" ", (value or "").strip()).casefold()


def normalize_company_key(name: str, industry: str | None = None, location: str | None = None) -> str:
    """Builds the identity key of a company: case-folded, whitespace-collapsed "name::industry::location".

    Raises:
        InvalidInputError: If the company name is empty.
    """
    if not name or not name.strip():
        raise InvalidInputError("Company name must not be empty.")
    return "::".join(_normalize_part(part) for part in (name, industry, location))


def _freshest(entries: list[CompanyResearchEntry]) -> CompanyResearchEntry:
    return max(entries, key=lambda e: (e.expires_at, e.updated_at))


class CompanyResearchCache:
    def __init__(
        self,
        helper_config: HelperConfig,
        store_client: StoreClientInterface,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._store = store_client
        self._clock = clock

    async def lookup(self, normalized_key: str) -> CompanyResearchEntry | None:
        """Return the active entry for a key, or None when missing or expired.

        When several active entries share the key, the one expiring last wins.
        """
        entries = await self._store.do_list_company_entries(normalized_key=normalized_key, active_at=self._clock())
        if not entries:
            return None
        if len(entries) > 1:
            self.logging.warning("Found %d active company entries for key '%s'", len(entries), normalized_key)
        return _freshest(entries)

    async def active_entries(self) -> list[CompanyResearchEntry]:
        """Return every unexpired entry, one per normalized key."""
        by_key: dict[str, list[CompanyResearchEntry]] = {}
        for entry in await self._store.do_list_company_entries(active_at=self._clock()):
            by_key.setdefault(entry.normalized_key, []).append(entry)
        return [_freshest(entries) for entries in by_key.values()]
