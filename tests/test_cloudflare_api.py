"""Tests for the Cloudflare API client and list / firewall setup."""

from unittest.mock import MagicMock

import pytest
import requests

from cloudflare_bouncer import (
    CloudflareAPI,
    Config,
    FatalRemoteError,
    PendingAdd,
    PendingDelete,
    TransientRemoteError,
    setup_ip_list_and_firewall,
)


def make_response(status_code: int = 200, payload=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


def ok(result=None, **extra) -> MagicMock:
    return make_response(200, {"success": True, "errors": [], "result": result, **extra})


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def api(session, logger) -> CloudflareAPI:
    return CloudflareAPI(
        base_url="https://cf.test/client/v4/",
        api_token="token",
        account_id="acc",
        session=session,
        logger=logger,
        sleep=lambda _: None,
    )


def test_request_sends_bearer_token(api, session) -> None:
    session.request.return_value = ok([])

    api.list_ip_lists()

    method, url = session.request.call_args.args
    assert method == "GET"
    assert url == "https://cf.test/client/v4/accounts/acc/rules/lists"
    assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer token"


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_rate_limit_and_server_errors_are_transient(api, session, status_code) -> None:
    session.request.return_value = make_response(
        status_code, {"success": False, "errors": [{"code": 10000, "message": "busy"}]}
    )

    with pytest.raises(TransientRemoteError) as excinfo:
        api.list_ip_lists()

    assert excinfo.value.status_code == status_code
    assert "busy" in str(excinfo.value)


def test_connection_errors_are_transient(api, session) -> None:
    session.request.side_effect = requests.ConnectionError("refused")

    with pytest.raises(TransientRemoteError):
        api.list_ip_lists()


@pytest.mark.parametrize("status_code", [400, 401, 403])
def test_client_errors_are_fatal(api, session, status_code) -> None:
    session.request.return_value = make_response(status_code, text="nope")

    with pytest.raises(FatalRemoteError) as excinfo:
        api.list_ip_lists()

    assert excinfo.value.status_code == status_code


def test_unsuccessful_envelope_is_fatal(api, session) -> None:
    session.request.return_value = make_response(
        200, {"success": False, "errors": [{"code": 1, "message": "bad list"}]}
    )

    with pytest.raises(FatalRemoteError, match="bad list"):
        api.list_ip_lists()


def test_create_list_items_resolves_ids(api, session) -> None:
    session.request.side_effect = [
        ok({"operation_id": "op-1"}),
        ok({"id": "op-1", "status": "pending"}),
        ok({"id": "op-1", "status": "completed"}),
        ok(
            [{"id": "R1", "ip": "1.2.3.4"}, {"id": "R0", "ip": "8.8.8.8"}],
            result_info={"cursors": {"after": "cur-2"}},
        ),
        ok([{"id": "R2", "ip": "10.0.0.0/8"}], result_info={"cursors": {}}),
    ]

    pairs = api.create_list_items("list-1", [
        PendingAdd("1.2.3.4", "crowdsec"),
        PendingAdd("10.0.0.0/8", "crowdsec"),
    ])

    assert pairs == [("1.2.3.4", "R1"), ("10.0.0.0/8", "R2")]
    create_call = session.request.call_args_list[0]
    assert create_call.args == ("POST", "https://cf.test/client/v4/accounts/acc/rules/lists/list-1/items")
    assert create_call.kwargs["json"] == [
        {"ip": "1.2.3.4", "comment": "crowdsec"},
        {"ip": "10.0.0.0/8", "comment": "crowdsec"},
    ]
    assert session.request.call_args_list[4].kwargs["params"] == {"per_page": 500, "cursor": "cur-2"}


def test_create_list_items_with_nothing_to_add(api, session) -> None:
    assert api.create_list_items("list-1", []) == []
    session.request.assert_not_called()


def test_delete_list_items(api, session) -> None:
    session.request.side_effect = [
        ok({"operation_id": "op-2"}),
        ok({"id": "op-2", "status": "completed"}),
    ]

    api.delete_list_items("list-1", [PendingDelete("R1"), PendingDelete("R2")])

    delete_call = session.request.call_args_list[0]
    assert delete_call.args[0] == "DELETE"
    assert delete_call.kwargs["json"] == {"items": [{"id": "R1"}, {"id": "R2"}]}
    assert session.request.call_args_list[1].args[1].endswith("/rules/lists/bulk_operations/op-2")


def test_failed_bulk_operation_is_fatal(api, session) -> None:
    session.request.side_effect = [
        ok({"operation_id": "op-3"}),
        ok({"id": "op-3", "status": "failed", "error": "invalid IP"}),
    ]

    with pytest.raises(FatalRemoteError, match="invalid IP"):
        api.delete_list_items("list-1", [PendingDelete("R1")])


def test_bulk_operation_timeout_is_transient(api, session) -> None:
    api.operation_timeout = 0
    session.request.side_effect = [
        ok({"operation_id": "op-4"}),
        ok({"id": "op-4", "status": "running"}),
    ]

    with pytest.raises(TransientRemoteError):
        api.delete_list_items("list-1", [PendingDelete("R1")])


def test_list_firewall_rules_follows_pages(api, session) -> None:
    session.request.side_effect = [
        ok([{"id": "a"}], result_info={"page": 1, "total_pages": 2}),
        ok([{"id": "b"}], result_info={"page": 2, "total_pages": 2}),
    ]

    rules = api.list_firewall_rules("zone-1")

    assert [rule["id"] for rule in rules] == ["a", "b"]


def test_setup_replaces_existing_list_and_rules(logger) -> None:
    api = MagicMock(spec=CloudflareAPI)
    api.list_ip_lists.return_value = [
        {"id": "old-list", "name": "crowdsec"},
        {"id": "other", "name": "office"},
    ]
    api.list_firewall_rules.return_value = [
        {"id": "rule-1", "filter": {"id": "filter-1", "expression": "ip.src in $crowdsec"}},
        {"id": "rule-2", "filter": {"id": "filter-2", "expression": "ip.src in $office"}},
    ]
    api.create_ip_list.return_value = {"id": "new-list"}
    config = Config(cf_zone_ids=["zone-1"], ip_list_name="crowdsec", rule_action="block")

    list_id = setup_ip_list_and_firewall(api, config, logger)

    assert list_id == "new-list"
    api.delete_firewall_rule.assert_called_once_with("zone-1", "rule-1")
    api.delete_filter.assert_called_once_with("zone-1", "filter-1")
    api.delete_ip_list.assert_called_once_with("old-list")
    api.create_firewall_rules.assert_called_once_with("zone-1", [{
        "filter": {"expression": "ip.src in $crowdsec"},
        "action": "block",
        "description": "CrowdSec blocklist",
    }])


def test_setup_without_zones_only_creates_list(logger) -> None:
    api = MagicMock(spec=CloudflareAPI)
    api.list_ip_lists.return_value = []
    api.create_ip_list.return_value = {"id": "new-list"}

    list_id = setup_ip_list_and_firewall(api, Config(), logger)

    assert list_id == "new-list"
    api.create_firewall_rules.assert_not_called()
    api.delete_ip_list.assert_not_called()


def test_setup_fails_without_list_id(logger) -> None:
    api = MagicMock(spec=CloudflareAPI)
    api.list_ip_lists.return_value = []
    api.create_ip_list.return_value = {}

    with pytest.raises(FatalRemoteError):
        setup_ip_list_and_firewall(api, Config(), logger)
