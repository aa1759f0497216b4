"""Carrier status to internal order state resolution.

Rules are an explicit ordered list of tagged variants evaluated in a
fixed sequence:

1. tenant_override   - rows owned by the tenant (provider-specific first,
                       then the tenant's provider="*" rows)
2. provider_default  - global rows for the provider, then the built-in
                       provider defaults
3. wildcard          - global provider="*" rows, then the built-in
                       cross-carrier wildcards

The first rule whose normalized provider_status matches wins. Operators
add or change rows at runtime; built-in defaults ship as constants and
can be seeded into the table with seed_defaults().
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.orm import Session

from src.db.models import (
    WILDCARD,
    AuditEventType,
    InternalOrderState,
    ProviderStatusMapping,
    Station,
    utc_now_iso,
)
from src.errors import FulfillmentError, NotFoundError, ValidationError
from src.services import mapping_cache
from src.services.audit_service import AuditService
from src.services.station_routing import is_terminal_state, station_for_state

logger = logging.getLogger(__name__)

WORKFLOW_MAPPING_ADMIN = "status-mapping-admin"


class RuleScope(str, Enum):
    """Tagged variants of a status mapping rule, in precedence order."""

    tenant_override = "tenant_override"
    provider_default = "provider_default"
    wildcard = "wildcard"


@dataclass(frozen=True)
class StatusRule:
    """One resolved mapping rule.

    Attributes:
        scope: Which variant the rule belongs to.
        provider: Provider code, or "*" for wildcard rules.
        provider_status: Normalized carrier status text.
        internal_status: Canonical internal state the status maps to.
        triggers_station: Station the internal state routes to.
        is_terminal: Whether internal_status is terminal.
        tenant_id: Owning tenant, or "*" for global rules.
        mapping_id: Table row id; None for built-in rules.
    """

    scope: RuleScope
    provider: str
    provider_status: str
    internal_status: InternalOrderState
    triggers_station: Station
    is_terminal: bool
    tenant_id: str = WILDCARD
    mapping_id: str | None = None

    @property
    def is_builtin(self) -> bool:
        return self.mapping_id is None

    def to_dict(self) -> dict:
        return {
            "id": self.mapping_id,
            "scope": self.scope.value,
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "provider_status": self.provider_status,
            "internal_status": self.internal_status.value,
            "triggers_station": self.triggers_station.value,
            "is_terminal": self.is_terminal,
            "builtin": self.is_builtin,
        }


_STATUS_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_status(provider_status: str) -> str:
    """Normalize carrier status text for matching.

    Case, surrounding whitespace, inner whitespace and hyphens are
    ignored: "Out for Delivery", "out-for-delivery" and
    "OUT_FOR_DELIVERY" all normalize to "out_for_delivery".
    """
    return _STATUS_SEPARATORS.sub("_", provider_status.strip().lower())


def normalize_provider(provider: str | None) -> str:
    """Normalize a provider code; empty values become the wildcard."""
    value = (provider or "").strip().lower()
    return value or WILDCARD


def _builtin(
    scope: RuleScope, provider: str, provider_status: str, state: InternalOrderState
) -> StatusRule:
    return StatusRule(
        scope=scope,
        provider=provider,
        provider_status=normalize_status(provider_status),
        internal_status=state,
        triggers_station=station_for_state(state),
        is_terminal=is_terminal_state(state),
    )


_S = InternalOrderState

WILDCARD_RULES: tuple[StatusRule, ...] = tuple(
    _builtin(RuleScope.wildcard, WILDCARD, status, state)
    for status, state in (
        ("pending", _S.operations_pending),
        ("picked_up", _S.shipped),
        ("in_transit", _S.in_transit),
        ("out_for_delivery", _S.out_for_delivery),
        ("delivered", _S.delivered),
        ("returned", _S.return_received),
        ("cancelled", _S.cancelled),
    )
)

PROVIDER_DEFAULT_RULES: dict[str, tuple[StatusRule, ...]] = {
    provider: tuple(
        _builtin(RuleScope.provider_default, provider, status, state)
        for status, state in rules
    )
    for provider, rules in {
        "aramex": (
            ("SHP", _S.shipped),
            ("OFD", _S.out_for_delivery),
            ("DEL", _S.delivered),
            ("RTS", _S.return_in_transit),
        ),
        "smsa": (
            ("Shipped", _S.shipped),
            ("Out for Delivery", _S.out_for_delivery),
            ("Delivered", _S.delivered),
        ),
        "jnt": (
            ("PICKUP_DONE", _S.shipped),
            ("ON_DELIVERY", _S.out_for_delivery),
            ("DELIVERED", _S.delivered),
        ),
    }.items()
}


def _scope_for_row(row: ProviderStatusMapping) -> RuleScope:
    if row.tenant_id != WILDCARD:
        return RuleScope.tenant_override
    if row.provider != WILDCARD:
        return RuleScope.provider_default
    return RuleScope.wildcard


def _rule_from_row(row: ProviderStatusMapping) -> StatusRule:
    state = InternalOrderState(row.internal_status)
    return StatusRule(
        scope=_scope_for_row(row),
        provider=row.provider,
        provider_status=row.provider_status,
        internal_status=state,
        triggers_station=station_for_state(state),
        is_terminal=row.is_terminal,
        tenant_id=row.tenant_id,
        mapping_id=row.id,
    )


def validate_mapping(
    internal_status: str,
    is_terminal: bool | None = None,
    triggers_station: str | None = None,
) -> tuple[InternalOrderState, Station, bool]:
    """Validate a mapping row and fill in derived fields.

    Terminal states can never be mapped as non-terminal (and vice versa),
    and the station must agree with the routing table.

    Returns:
        (internal_status, station, is_terminal) with defaults applied.

    Raises:
        ValidationError: If any field disagrees with the routing table.
    """
    try:
        state = InternalOrderState(internal_status)
    except ValueError:
        raise ValidationError(
            str(FulfillmentError.from_code("E-2002", internal_status=internal_status))
        ) from None

    expected_terminal = is_terminal_state(state)
    if is_terminal is not None and is_terminal != expected_terminal:
        raise ValidationError(
            str(
                FulfillmentError.from_code(
                    "E-2003", internal_status=state.value, expected=expected_terminal
                )
            )
        )

    expected_station = station_for_state(state)
    if triggers_station is not None and triggers_station != expected_station.value:
        raise ValidationError(
            str(
                FulfillmentError.from_code(
                    "E-2004",
                    internal_status=state.value,
                    expected=expected_station.value,
                    station=triggers_station,
                )
            )
        )

    return state, expected_station, expected_terminal


class StatusMappingService:
    """Resolves carrier statuses and manages operator mapping rows.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def candidate_rules(self, tenant_id: str, provider: str) -> list[StatusRule]:
        """Return every rule for (tenant, provider) in evaluation order."""
        provider = normalize_provider(provider)
        cached = mapping_cache.get(tenant_id, provider)
        if cached is not None:
            return cached

        rows = (
            self.db.query(ProviderStatusMapping)
            .filter(
                ProviderStatusMapping.tenant_id.in_([tenant_id, WILDCARD]),
                ProviderStatusMapping.provider.in_([provider, WILDCARD]),
            )
            .all()
        )

        def bucket(row_tenant: str, row_provider: str) -> list[StatusRule]:
            return [
                _rule_from_row(row)
                for row in sorted(rows, key=lambda r: r.provider_status)
                if row.tenant_id == row_tenant and row.provider == row_provider
            ]

        rules: list[StatusRule] = []
        if tenant_id != WILDCARD:
            rules.extend(bucket(tenant_id, provider))
            if provider != WILDCARD:
                rules.extend(bucket(tenant_id, WILDCARD))
        if provider != WILDCARD:
            rules.extend(bucket(WILDCARD, provider))
            rules.extend(PROVIDER_DEFAULT_RULES.get(provider, ()))
        rules.extend(bucket(WILDCARD, WILDCARD))
        rules.extend(WILDCARD_RULES)

        mapping_cache.put(tenant_id, provider, rules)
        return rules

    def resolve(
        self, tenant_id: str, provider: str, provider_status: str
    ) -> StatusRule | None:
        """Resolve a carrier status to the first matching rule.

        Returns:
            The winning StatusRule, or None when the pair is unmapped.
        """
        status_key = normalize_status(provider_status)
        for rule in self.candidate_rules(tenant_id, provider):
            if rule.provider_status == status_key:
                return rule
        logger.info(
            "status_unmapped tenant=%s provider=%s status=%r",
            tenant_id,
            provider,
            provider_status,
        )
        return None

    def list_mappings(
        self,
        tenant_id: str,
        provider: str | None = None,
        include_defaults: bool = True,
    ) -> list[StatusRule]:
        """List the tenant's rows, plus global rows and built-ins if requested."""
        tenants = [tenant_id, WILDCARD] if include_defaults else [tenant_id]
        query = self.db.query(ProviderStatusMapping).filter(
            ProviderStatusMapping.tenant_id.in_(tenants)
        )
        if provider is not None:
            query = query.filter(
                ProviderStatusMapping.provider == normalize_provider(provider)
            )
        rules = [
            _rule_from_row(row)
            for row in query.order_by(
                ProviderStatusMapping.provider, ProviderStatusMapping.provider_status
            ).all()
        ]
        if include_defaults:
            for provider_code, defaults in PROVIDER_DEFAULT_RULES.items():
                if provider is None or normalize_provider(provider) == provider_code:
                    rules.extend(defaults)
            if provider is None or normalize_provider(provider) == WILDCARD:
                rules.extend(WILDCARD_RULES)
        order = list(RuleScope)
        return sorted(rules, key=lambda r: order.index(r.scope))

    def upsert_mapping(
        self,
        tenant_id: str,
        provider: str,
        provider_status: str,
        internal_status: str,
        triggers_station: str | None = None,
        is_terminal: bool | None = None,
    ) -> StatusRule:
        """Insert or update a mapping row keyed on (tenant, provider, status).

        Pass tenant_id="*" for a global row (provider default or wildcard).

        Raises:
            ValidationError: If the row disagrees with the routing table.
        """
        if not provider_status or not provider_status.strip():
            raise ValidationError("provider_status must not be empty")
        state, station, terminal = validate_mapping(
            internal_status, is_terminal, triggers_station
        )
        provider_code = normalize_provider(provider)
        status_key = normalize_status(provider_status)

        row = (
            self.db.query(ProviderStatusMapping)
            .filter(
                ProviderStatusMapping.tenant_id == tenant_id,
                ProviderStatusMapping.provider == provider_code,
                ProviderStatusMapping.provider_status == status_key,
            )
            .first()
        )
        old_value = None
        if row is None:
            row = ProviderStatusMapping(
                tenant_id=tenant_id,
                provider=provider_code,
                provider_status=status_key,
            )
            self.db.add(row)
            action = "created"
        else:
            old_value = {
                "internal_status": row.internal_status,
                "is_terminal": row.is_terminal,
            }
            action = "updated"

        row.internal_status = state.value
        row.triggers_station = station.value
        row.is_terminal = terminal
        row.updated_at = utc_now_iso()
        self.db.flush()

        AuditService(self.db).log(
            tenant_id=tenant_id,
            event_type=AuditEventType.mapping_changed,
            entity_type="status_mapping",
            entity_id=row.id,
            action=action,
            workflow_name=WORKFLOW_MAPPING_ADMIN,
            old_value=old_value,
            new_value={
                "provider": provider_code,
                "provider_status": status_key,
                "internal_status": state.value,
                "is_terminal": terminal,
            },
        )
        self.db.commit()
        self._invalidate(tenant_id)

        logger.info(
            "status_mapping_%s tenant=%s provider=%s status=%s -> %s",
            action,
            tenant_id,
            provider_code,
            status_key,
            state.value,
        )
        return _rule_from_row(row)

    def delete_mapping(self, tenant_id: str, mapping_id: str) -> None:
        """Delete one of the tenant's mapping rows.

        Raises:
            NotFoundError: If the row does not exist for this tenant.
        """
        row = (
            self.db.query(ProviderStatusMapping)
            .filter(
                ProviderStatusMapping.id == mapping_id,
                ProviderStatusMapping.tenant_id == tenant_id,
            )
            .first()
        )
        if row is None:
            raise NotFoundError("Status mapping", mapping_id)

        AuditService(self.db).log(
            tenant_id=tenant_id,
            event_type=AuditEventType.mapping_changed,
            entity_type="status_mapping",
            entity_id=row.id,
            action="deleted",
            workflow_name=WORKFLOW_MAPPING_ADMIN,
            old_value={
                "provider": row.provider,
                "provider_status": row.provider_status,
                "internal_status": row.internal_status,
            },
        )
        self.db.delete(row)
        self.db.commit()
        self._invalidate(tenant_id)

    def seed_defaults(self) -> int:
        """Copy built-in provider defaults and wildcards into the table.

        Existing global rows are left untouched.

        Returns:
            Number of rows inserted.
        """
        existing = {
            (row.provider, row.provider_status)
            for row in self.db.query(ProviderStatusMapping)
            .filter(ProviderStatusMapping.tenant_id == WILDCARD)
            .all()
        }
        builtins = [rule for rules in PROVIDER_DEFAULT_RULES.values() for rule in rules]
        builtins.extend(WILDCARD_RULES)

        inserted = 0
        for rule in builtins:
            if (rule.provider, rule.provider_status) in existing:
                continue
            self.db.add(
                ProviderStatusMapping(
                    tenant_id=WILDCARD,
                    provider=rule.provider,
                    provider_status=rule.provider_status,
                    internal_status=rule.internal_status.value,
                    triggers_station=rule.triggers_station.value,
                    is_terminal=rule.is_terminal,
                )
            )
            inserted += 1
        self.db.commit()
        if inserted:
            self._invalidate(WILDCARD)
        logger.info("status_mapping_seed inserted=%d", inserted)
        return inserted

    @staticmethod
    def _invalidate(tenant_id: str) -> None:
        # Global rows feed every tenant's rule list
        mapping_cache.invalidate(None if tenant_id == WILDCARD else tenant_id)
