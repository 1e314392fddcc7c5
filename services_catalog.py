# services_catalog.py
# Service list + per-service vendor servers + search
# The catalog itself lives in config (SERVICES / SERVICE_SERVERS)

from dataclasses import dataclass
from typing import List, Optional, Tuple

from fuzzywuzzy import fuzz

from config import SERVICES, SERVICE_SERVERS, SERVICES_PER_PAGE


@dataclass(frozen=True)
class Service:
    id: str
    name: str
    price: float

    @property
    def command(self) -> str:
        return f"/find_{self.id}"


@dataclass(frozen=True)
class Server:
    index: int
    name: str
    price: float
    country: str
    service: str          # vendor service code
    success: str = ""
    time: str = ""


def get_service(service_id: str) -> Optional[Service]:
    sid = (service_id or "").strip().upper()
    meta = SERVICES.get(sid)
    if not meta:
        return None
    return Service(id=sid, name=str(meta["name"]), price=float(meta["price"]))


def get_servers(service_id: str) -> List[Server]:
    sid = (service_id or "").strip().upper()
    raw = SERVICE_SERVERS.get(sid) or SERVICE_SERVERS["DEFAULT"]
    return [
        Server(
            index=i,
            name=str(s["name"]),
            price=float(s["price"]),
            country=str(s["country"]),
            service=str(s["service"]),
            success=str(s.get("success", "")),
            time=str(s.get("time", "")),
        )
        for i, s in enumerate(raw)
    ]


def resolve(service_id: str, server_index: int) -> Optional[Tuple[Service, Server]]:
    service = get_service(service_id)
    if service is None:
        return None
    servers = get_servers(service.id)
    try:
        idx = int(server_index)
    except (TypeError, ValueError):
        return None
    if idx < 0 or idx >= len(servers):
        return None
    return service, servers[idx]


def all_services() -> List[Service]:
    return [get_service(sid) for sid in SERVICES]


def list_services(page: int = 0, per_page: int = SERVICES_PER_PAGE) -> Tuple[List[Service], int, int]:
    """Returns (services on page, clamped page, total pages)."""
    items = all_services()
    total_pages = max(1, (len(items) + per_page - 1) // per_page)
    page = min(max(0, int(page)), total_pages - 1)
    start = page * per_page
    return items[start:start + per_page], page, total_pages


def search_services(query: str, threshold: int = 80, limit: int = 30) -> List[Service]:
    """
    Substring match on id/name first, then fuzzy (partial ratio) for typos.
    """
    q = (query or "").strip().lower()
    if not q:
        return []

    matches = []
    for s in all_services():
        name = s.name.lower()
        if q in name or q in s.id.lower():
            matches.append((101, s))
            continue
        score = fuzz.partial_ratio(name, q)
        if score >= threshold:
            matches.append((score, s))

    matches.sort(key=lambda x: x[0], reverse=True)
    return [m[1] for m in matches[:limit]]
