"""Interfaces for data the engine reads from the surrounding application.

Identity lookups and audit queries are coroutines: they are the only points
where an engine call yields to other tasks. Geolocation is a local lookup.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, Dict, Iterable, List, Mapping, Optional, Protocol

import geoip2.database
import geoip2.errors

from .models import AuditRecord, GeoPoint

logger = logging.getLogger(__name__)


class IdentityDirectory(Protocol):
    async def display_name(self, identity_id: str) -> Optional[str]:
        ...


class AuditLog(Protocol):
    async def query(
        self,
        *,
        identity_id: Optional[str] = None,
        actions: Optional[Collection[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        ...

    async def count(
        self,
        *,
        identity_id: Optional[str] = None,
        actions: Optional[Collection[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        ...


class GeoLocator(Protocol):
    def locate(self, ip: str) -> Optional[GeoPoint]:
        ...


class InMemoryIdentityDirectory:
    def __init__(self, names: Optional[Mapping[str, str]] = None):
        self.names: Dict[str, str] = dict(names or {})

    async def display_name(self, identity_id: str) -> Optional[str]:
        return self.names.get(identity_id)


class InMemoryAuditLog:
    def __init__(self, records: Optional[Iterable[AuditRecord]] = None):
        self.records: List[AuditRecord] = list(records or [])

    def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def query(
        self,
        *,
        identity_id: Optional[str] = None,
        actions: Optional[Collection[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        return [
            record
            for record in self.records
            if (identity_id is None or record.identity_id == identity_id)
            and (actions is None or record.action in actions)
            and (since is None or record.timestamp >= since)
            and (until is None or record.timestamp <= until)
        ]

    async def count(self, **filters) -> int:
        return len(await self.query(**filters))


class StaticGeoLocator:
    """Resolves IPs from a fixed table of coordinates."""

    def __init__(self, table: Optional[Mapping[str, GeoPoint]] = None):
        self.table: Dict[str, GeoPoint] = dict(table or {})

    def locate(self, ip: str) -> Optional[GeoPoint]:
        return self.table.get(ip)


class GeoIP2Locator:
    """Resolves IPs against a MaxMind GeoIP2/GeoLite2 city database."""

    def __init__(self, database_path: Optional[str] = None, reader: Optional[geoip2.database.Reader] = None):
        if reader is None:
            reader = geoip2.database.Reader(database_path)
        self.reader = reader

    def locate(self, ip: str) -> Optional[GeoPoint]:
        try:
            response = self.reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            logger.debug("No geolocation for %s", ip)
            return None
        location = response.location
        if location.latitude is None or location.longitude is None:
            return None
        label = ", ".join(part for part in (response.city.name, response.country.iso_code) if part)
        return GeoPoint(latitude=location.latitude, longitude=location.longitude, label=label)

    def close(self) -> None:
        self.reader.close()
