import services_catalog
from config import SERVICES, SERVICE_SERVERS


def test_get_service_is_case_insensitive():
    s = services_catalog.get_service("whatsapp")
    assert s.id == "WHATSAPP"
    assert s.name == "Whatsapp"
    assert s.command == "/find_WHATSAPP"


def test_unknown_service():
    assert services_catalog.get_service("NOPE") is None
    assert services_catalog.resolve("NOPE", 0) is None


def test_resolve_server():
    service, server = services_catalog.resolve("WHATSAPP", 0)
    assert service.id == "WHATSAPP"
    assert server.index == 0
    assert server.service == "wa"
    assert server.price == 20


def test_resolve_rejects_bad_index():
    assert services_catalog.resolve("WHATSAPP", 5) is None
    assert services_catalog.resolve("WHATSAPP", -1) is None
    assert services_catalog.resolve("WHATSAPP", "x") is None


def test_services_without_servers_use_default():
    sid = next(s for s in SERVICES if s not in SERVICE_SERVERS)
    servers = services_catalog.get_servers(sid)
    assert [s.service for s in servers] == [s["service"] for s in SERVICE_SERVERS["DEFAULT"]]


def test_list_services_paging():
    items, page, total = services_catalog.list_services(0, per_page=5)
    assert len(items) == 5
    assert page == 0
    assert total == (len(SERVICES) + 4) // 5

    items, page, _ = services_catalog.list_services(99, per_page=5)
    assert page == total - 1
    assert items


def test_search_substring_and_typo():
    assert services_catalog.search_services("whats")[0].id == "WHATSAPP"
    assert services_catalog.search_services("whatsapq")[0].id == "WHATSAPP"
    assert services_catalog.search_services("   ") == []
