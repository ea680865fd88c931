"""Unit tests for casalibre.homeassistant.allowlist.Allowlist."""

from casalibre.homeassistant.allowlist import Allowlist


def test_default_allows_everything() -> None:
    allowlist = Allowlist()
    assert allowlist.is_entity_allowed("lock.front_door")
    assert allowlist.is_service_allowed("lock", "unlock")


def test_restricted_entities() -> None:
    allowlist = Allowlist.restricted(read_entities=["switch.kitchen"])
    assert allowlist.is_entity_allowed("switch.kitchen")
    assert not allowlist.is_entity_allowed("switch.hallway")


def test_restricted_services_use_domain_dot_service_keys() -> None:
    allowlist = Allowlist.restricted(write_services=["switch.turn_on", "cover.close_cover"])
    assert allowlist.is_service_allowed("switch", "turn_on")
    assert allowlist.is_service_allowed("cover", "close_cover")
    assert not allowlist.is_service_allowed("switch", "turn_off")


def test_flags_are_independent() -> None:
    allowlist = Allowlist(allow_all_entities=True, allow_all_services=False)
    assert allowlist.is_entity_allowed("anything.at_all")
    assert not allowlist.is_service_allowed("switch", "turn_on")
