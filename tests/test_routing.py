import json

import pytest

from mail_gateway.models import ServerSettings
from mail_gateway.routing import (
    CATCH_ALL_REJECT,
    MALFORMED_ADDRESS,
    UNMANAGED_DOMAIN,
    Drop,
    Forward,
    Reject,
    StoreLocal,
    resolve,
    split_address,
)


def make_settings(*domains, **fields):
    record = {"DomainsJson": json.dumps(list(domains))}
    record.update(fields)
    return ServerSettings.from_record(record)


EXAMPLE = {
    "DomainName": "example.com",
    "ForwardingRules": [
        {"IncomingEmail": "sales@example.com", "DestinationEmail": "team@other.com"},
        {"IncomingEmail": "sales@example.com", "DestinationEmail": "second@other.com"},
        {"IncomingEmail": "blank@example.com", "DestinationEmail": ""},
    ],
    "CatchAll": {"Type": "Reject"},
}


def test_split_address():
    assert split_address("User@Example.COM") == ("user", "example.com")
    assert split_address("Alice <alice@example.com>") == ("alice", "example.com")
    assert split_address("<bob@example.com>") == ("bob", "example.com")
    assert split_address("nobody") is None
    assert split_address("@example.com") is None
    assert split_address("user@") is None
    assert split_address("") is None


@pytest.mark.parametrize("address", ["nobody", "@example.com", "user@", ""])
def test_malformed_recipient_is_rejected(address):
    assert resolve(address, make_settings(EXAMPLE)) == Reject(MALFORMED_ADDRESS)


def test_unmanaged_domain_is_rejected():
    assert resolve("user@unknown.org", make_settings(EXAMPLE)) == Reject(UNMANAGED_DOMAIN)


def test_first_matching_rule_wins_over_catch_all():
    verdict = resolve("sales@example.com", make_settings(EXAMPLE))
    assert verdict == Forward("team@other.com")
    assert verdict.action == "forward"


def test_rule_match_ignores_case():
    assert resolve("SALES@Example.Com", make_settings(EXAMPLE)) == Forward("team@other.com")


def test_rule_with_empty_destination_is_skipped():
    assert resolve("blank@example.com", make_settings(EXAMPLE)) == Reject(CATCH_ALL_REJECT)


def test_catch_all_reject():
    verdict = resolve("other@example.com", make_settings(EXAMPLE))
    assert verdict == Reject(CATCH_ALL_REJECT)
    assert verdict.action == "reject"


def test_catch_all_delete_drops():
    settings = make_settings({"DomainName": "example.com", "CatchAll": {"Type": 1}})
    verdict = resolve("anyone@example.com", settings)
    assert verdict == Drop()
    assert verdict.action == "drop"


def test_catch_all_forward():
    settings = make_settings(
        {"DomainName": "example.com", "CatchAll": {"Type": "Forward", "ForwardToEmail": "all@other.com"}}
    )
    assert resolve("anyone@example.com", settings) == Forward("all@other.com")


def test_catch_all_forward_without_target_stores():
    settings = make_settings({"DomainName": "example.com", "CatchAll": {"Type": "Forward"}})
    assert resolve("anyone@example.com", settings) == StoreLocal("example.com", "anyone")


def test_catch_all_none_stores_locally():
    settings = make_settings({"DomainName": "Example.com", "CatchAll": {"Type": 3}})
    verdict = resolve("John.Doe@EXAMPLE.com", settings)
    assert verdict == StoreLocal("example.com", "john.doe")
    assert verdict.action == "store"


def test_first_domain_entry_wins():
    settings = make_settings(
        {"DomainName": "example.com", "CatchAll": {"Type": "Delete"}},
        {"DomainName": "example.com", "CatchAll": {"Type": "Reject"}},
    )
    assert resolve("x@example.com", settings) == Drop()


def test_server_name_as_domain_is_opt_in():
    plain = make_settings(ServerName="mx.example.net")
    assert resolve("postmaster@mx.example.net", plain) == Reject(UNMANAGED_DOMAIN)

    legacy = make_settings(ServerName="MX.example.net", ServerNameAsDomain=True)
    assert resolve("postmaster@mx.example.net", legacy) == StoreLocal("mx.example.net", "postmaster")
    assert resolve("postmaster@other.net", legacy) == Reject(UNMANAGED_DOMAIN)


def test_resolve_is_deterministic():
    settings = make_settings(EXAMPLE, {"DomainName": "b.com", "CatchAll": {"Type": "None"}})
    for address in ("sales@example.com", "x@example.com", "y@b.com", "bad", "z@c.com"):
        assert resolve(address, settings) == resolve(address, settings)


def test_no_domains_rejects_everything():
    settings = ServerSettings.defaults()
    assert resolve("user@localhost", settings) == Reject(UNMANAGED_DOMAIN)


def test_documented_example_domain():
    settings = make_settings(
        {
            "DomainName": "example.com",
            "ForwardingRules": [{"IncomingEmail": "a@example.com", "DestinationEmail": "b@other.com"}],
            "CatchAll": {"Type": "None"},
        }
    )
    assert resolve("a@example.com", settings) == Forward("b@other.com")
    assert resolve("c@example.com", settings) == StoreLocal("example.com", "c")
    assert isinstance(resolve("x@unmanaged.com", settings), Reject)


@pytest.mark.parametrize("catch_all", ["Reject", "Delete", "Forward", "None"])
def test_matching_rule_wins_for_every_catch_all(catch_all):
    settings = make_settings(
        {
            "DomainName": "example.com",
            "ForwardingRules": [{"IncomingEmail": "a@example.com", "DestinationEmail": "b@other.com"}],
            "CatchAll": {"Type": catch_all, "ForwardToEmail": "all@other.com"},
        }
    )
    assert resolve("a@example.com", settings) == Forward("b@other.com")
