"""Tests for carrier status resolution and mapping administration."""

import pytest

from src.db.models import WILDCARD, AuditLog, InternalOrderState, ProviderStatusMapping, Station
from src.errors import NotFoundError, ValidationError
from src.services import mapping_cache
from src.services.status_mapping import (
    PROVIDER_DEFAULT_RULES,
    WILDCARD_RULES,
    RuleScope,
    StatusMappingService,
    normalize_provider,
    normalize_status,
    validate_mapping,
)


@pytest.fixture
def service(db_session) -> StatusMappingService:
    return StatusMappingService(db_session)


class TestNormalization:
    """Status text matching ignores case, spacing and hyphens."""

    @pytest.mark.parametrize(
        "raw", ["Out for Delivery", "out-for-delivery", "OUT_FOR_DELIVERY", "  out  for delivery "]
    )
    def test_status_variants_normalize_alike(self, raw) -> None:
        assert normalize_status(raw) == "out_for_delivery"

    def test_empty_provider_becomes_wildcard(self) -> None:
        assert normalize_provider(None) == WILDCARD
        assert normalize_provider("  ") == WILDCARD
        assert normalize_provider(" SMSA ") == "smsa"


class TestResolution:
    """Tenant override beats provider default beats wildcard."""

    def test_builtin_provider_default(self, service, tenant_id) -> None:
        rule = service.resolve(tenant_id, "aramex", "SHP")
        assert rule.internal_status == InternalOrderState.shipped
        assert rule.scope == RuleScope.provider_default
        assert rule.is_builtin

    def test_builtin_wildcard_for_unknown_provider(self, service, tenant_id) -> None:
        rule = service.resolve(tenant_id, "some-new-carrier", "Delivered")
        assert rule.internal_status == InternalOrderState.delivered
        assert rule.scope == RuleScope.wildcard
        assert rule.is_terminal
        assert rule.triggers_station == Station.finance

    def test_unmapped_returns_none(self, service, tenant_id) -> None:
        assert service.resolve(tenant_id, "aramex", "held at customs") is None

    def test_provider_default_beats_wildcard(self, service, tenant_id) -> None:
        """aramex RTS maps to return_in_transit, not a wildcard guess."""
        service.upsert_mapping(WILDCARD, WILDCARD, "RTS", "return_received")
        rule = service.resolve(tenant_id, "aramex", "rts")
        assert rule.internal_status == InternalOrderState.return_in_transit

    def test_tenant_override_beats_provider_default(self, service, tenant_id) -> None:
        service.upsert_mapping(tenant_id, "aramex", "DEL", "finance_pending")
        rule = service.resolve(tenant_id, "aramex", "DEL")
        assert rule.internal_status == InternalOrderState.finance_pending
        assert rule.scope == RuleScope.tenant_override
        assert rule.tenant_id == tenant_id

    def test_tenant_wildcard_row_beats_provider_default(self, service, tenant_id) -> None:
        service.upsert_mapping(tenant_id, WILDCARD, "SHP", "operations_processing")
        rule = service.resolve(tenant_id, "aramex", "SHP")
        assert rule.internal_status == InternalOrderState.operations_processing

    def test_tenant_override_is_isolated(self, service, tenant_id, other_tenant_id) -> None:
        service.upsert_mapping(tenant_id, "aramex", "DEL", "finance_pending")
        rule = service.resolve(other_tenant_id, "aramex", "DEL")
        assert rule.internal_status == InternalOrderState.delivered

    def test_global_provider_row_beats_builtin_default(self, service, tenant_id) -> None:
        service.upsert_mapping(WILDCARD, "smsa", "Delivered", "finance_pending")
        rule = service.resolve(tenant_id, "smsa", "delivered")
        assert rule.internal_status == InternalOrderState.finance_pending
        assert rule.scope == RuleScope.provider_default
        assert not rule.is_builtin

    def test_candidate_rules_are_cached(self, service, tenant_id, db_session) -> None:
        service.resolve(tenant_id, "aramex", "SHP")
        assert mapping_cache.get(tenant_id, "aramex") is not None

    def test_upsert_invalidates_cache(self, service, tenant_id) -> None:
        assert service.resolve(tenant_id, "aramex", "HOLD") is None
        service.upsert_mapping(tenant_id, "aramex", "HOLD", "in_transit")
        rule = service.resolve(tenant_id, "aramex", "HOLD")
        assert rule.internal_status == InternalOrderState.in_transit


class TestValidation:
    """Mapping rows must agree with the routing table."""

    def test_fills_derived_fields(self) -> None:
        state, station, terminal = validate_mapping("return_received")
        assert state == InternalOrderState.return_received
        assert station == Station.returns
        assert terminal is True

    def test_unknown_internal_status(self) -> None:
        with pytest.raises(ValidationError, match="E-2002"):
            validate_mapping("teleported")

    def test_terminal_flag_mismatch(self) -> None:
        with pytest.raises(ValidationError, match="E-2003"):
            validate_mapping("delivered", is_terminal=False)

    def test_non_terminal_flagged_terminal(self) -> None:
        with pytest.raises(ValidationError, match="E-2003"):
            validate_mapping("in_transit", is_terminal=True)

    def test_station_mismatch(self) -> None:
        with pytest.raises(ValidationError, match="E-2004"):
            validate_mapping("delivered", triggers_station="operations")

    def test_blank_provider_status_rejected(self, service, tenant_id) -> None:
        with pytest.raises(ValidationError):
            service.upsert_mapping(tenant_id, "aramex", "  ", "delivered")


class TestAdministration:
    """Upsert, list, delete and seed operator rows."""

    def test_upsert_creates_then_updates(self, service, tenant_id, db_session) -> None:
        first = service.upsert_mapping(tenant_id, "Aramex", "Held", "in_transit")
        second = service.upsert_mapping(tenant_id, "aramex", "held", "out_for_delivery")

        assert first.mapping_id == second.mapping_id
        rows = db_session.query(ProviderStatusMapping).all()
        assert len(rows) == 1
        assert rows[0].provider == "aramex"
        assert rows[0].provider_status == "held"
        assert rows[0].internal_status == "out_for_delivery"

        actions = [
            log.action
            for log in db_session.query(AuditLog).filter(
                AuditLog.entity_type == "status_mapping"
            )
        ]
        assert sorted(actions) == ["created", "updated"]

    def test_list_includes_builtins_in_scope_order(self, service, tenant_id) -> None:
        service.upsert_mapping(tenant_id, "aramex", "Held", "in_transit")
        rules = service.list_mappings(tenant_id)
        assert rules[0].scope == RuleScope.tenant_override
        assert rules[-1].scope == RuleScope.wildcard
        builtin_count = sum(len(r) for r in PROVIDER_DEFAULT_RULES.values()) + len(WILDCARD_RULES)
        assert len(rules) == builtin_count + 1

    def test_list_without_defaults(self, service, tenant_id) -> None:
        service.upsert_mapping(tenant_id, "aramex", "Held", "in_transit")
        rules = service.list_mappings(tenant_id, include_defaults=False)
        assert [r.provider_status for r in rules] == ["held"]

    def test_list_filtered_by_provider(self, service, tenant_id) -> None:
        rules = service.list_mappings(tenant_id, provider="jnt")
        assert {r.provider for r in rules} == {"jnt"}

    def test_delete_mapping(self, service, tenant_id, db_session) -> None:
        rule = service.upsert_mapping(tenant_id, "aramex", "Held", "in_transit")
        service.delete_mapping(tenant_id, rule.mapping_id)
        assert db_session.query(ProviderStatusMapping).count() == 0
        assert service.resolve(tenant_id, "aramex", "Held") is None

    def test_delete_other_tenants_row_is_not_found(
        self, service, tenant_id, other_tenant_id
    ) -> None:
        rule = service.upsert_mapping(tenant_id, "aramex", "Held", "in_transit")
        with pytest.raises(NotFoundError):
            service.delete_mapping(other_tenant_id, rule.mapping_id)

    def test_seed_defaults_is_repeatable(self, service, db_session) -> None:
        inserted = service.seed_defaults()
        expected = sum(len(r) for r in PROVIDER_DEFAULT_RULES.values()) + len(WILDCARD_RULES)
        assert inserted == expected
        assert service.seed_defaults() == 0
        assert db_session.query(ProviderStatusMapping).count() == expected
