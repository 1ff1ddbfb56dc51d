import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from automation_engine.errors import CircuitOpen, DeliveryFailure, QuotaExceeded
from automation_engine.models import (
    AutomationDefinition,
    AutomationState,
    AutomationStatus,
    Lead,
    PlanQuotas,
    QuotaTracking,
    Template,
    Tenant,
)
from automation_engine.processor import TenantRunProcessor
from automation_engine.prometheus import EngineMetrics
from automation_engine.providers import DeliveryProvider, ProviderRegistry

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
QUOTAS = PlanQuotas(max_sends_per_day=100, max_sends_per_hour=2, max_consecutive_failures_before_stop=2)


class DummyStore:
    def __init__(self):
        self.tracking: dict[str, QuotaTracking] = {}
        self.tracking_writes: list[QuotaTracking] = []
        self.automations: list[AutomationDefinition] = []
        self.states: dict[str, AutomationState] = {}
        self.leads: dict[str, Lead] = {}
        self.templates: dict[str, Template] = {}
        self.batches: list[list[AutomationState]] = []
        self.state_reads = 0

    async def list_active_tenants(self):
        return []

    async def get_quota_tracking(self, tenant_id, now=None):
        return self.tracking.setdefault(tenant_id, QuotaTracking.initial(now or T0))

    async def put_quota_tracking(self, tenant_id, tracking):
        self.tracking[tenant_id] = tracking
        self.tracking_writes.append(tracking)

    async def list_active_automations(self, tenant_id):
        return [a for a in self.automations if a.tenant_id == tenant_id]

    async def list_active_states(self, tenant_id, due_before=None, limit=None, after=None):
        self.state_reads += 1
        states = [
            s for s in self.states.values()
            if s.tenant_id == tenant_id
            and s.status == AutomationStatus.ACTIVE
            and (due_before is None or s.next_step_time <= due_before)
            and (after is None or (s.next_step_time, s.id) > after)
        ]
        states.sort(key=lambda s: (s.next_step_time, s.id))
        return states[:limit] if limit is not None else states

    async def batch_update_states(self, updates):
        self.batches.append(list(updates))
        for state in updates:
            self.states[state.id] = state

    async def get_lead(self, tenant_id, lead_id):
        return self.leads.get(lead_id)

    async def get_template(self, tenant_id, template_id):
        return self.templates.get(template_id)

    def enroll(self, state_id, lead_id, automation_id="welcome", when=T0, index=0):
        self.leads.setdefault(lead_id, Lead(id=lead_id, tenant_id="acme", email=f"{lead_id}@example.com"))
        self.states[state_id] = AutomationState(
            id=state_id,
            tenant_id="acme",
            automation_id=automation_id,
            lead_id=lead_id,
            next_step_index=index,
            next_step_time=when,
        )


class DummyProvider(DeliveryProvider):
    name = "brevo"
    required_fields = ("api_key",)

    def __init__(self, outcomes=None, delay=0.0):
        super().__init__(timeout=5)
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.sent = []

    async def send(self, credentials, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


TENANT = Tenant(
    id="acme",
    name="Acme",
    plan_id="plan_starter",
    provider="brevo",
    credentials={"brevo": {"api_key": "k", "sender_email": "news@acme.test"}},
)


def _automation(*steps, **extra):
    return AutomationDefinition(id="welcome", tenant_id="acme", steps=list(steps), **extra)


SEND = {"type": "send", "channel": "email", "template_ref": "tpl-1"}


def _processor(store, provider, **kwargs):
    kwargs.setdefault("quotas_resolver", lambda tenant: QUOTAS)
    return TenantRunProcessor(
        store,
        ProviderRegistry([provider]),
        EngineMetrics(),
        **kwargs,
    )


@pytest.fixture
def store():
    s = DummyStore()
    s.templates["tpl-1"] = Template(id="tpl-1", tenant_id="acme", subject="Hello", html="<p>Hello</p>")
    return s


@pytest.mark.asyncio
async def test_full_sequence_send_then_delay_completes(store):
    store.automations.append(_automation(SEND, {"type": "delay", "duration": 1, "unit": "hours"}))
    store.enroll("s1", "lead-1")
    provider = DummyProvider()
    processor = _processor(store, provider)

    first = await processor.process(TENANT, T0)
    assert first.sends == 1
    assert first.steps_advanced == 1
    assert store.states["s1"].next_step_index == 1
    assert store.states["s1"].next_step_time == T0
    assert provider.sent[0].sender_email == "news@acme.test"
    assert provider.sent[0].sender_name == "Acme"

    second = await processor.process(TENANT, T0 + timedelta(minutes=1))
    state = store.states["s1"]
    assert second.steps_advanced == 1
    assert state.next_step_index == 2
    assert state.status == AutomationStatus.COMPLETED
    assert store.tracking["acme"].sent_today == 1


@pytest.mark.asyncio
async def test_quota_exhaustion_skips_remaining_sends(store):
    store.automations.append(_automation(SEND, {"type": "delay", "duration": 1}))
    for idx in range(3):
        store.enroll(f"s{idx}", f"lead-{idx}", when=T0 - timedelta(minutes=3 - idx))
    provider = DummyProvider()

    result = await _processor(store, provider).process(TENANT, T0)

    assert result.sends == 2
    assert result.skipped_quota == 1
    assert store.tracking["acme"].sent_this_hour == 2
    # Oldest due states are sent first.
    assert [m.to for m in provider.sent] == ["lead-0@example.com", "lead-1@example.com"]
    assert store.states["s2"].next_step_index == 0
    assert "1 skipped (quota exceeded)" in result.detail()


@pytest.mark.asyncio
async def test_delivery_failure_marks_error_and_counts(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    provider = DummyProvider(outcomes=[DeliveryFailure("brevo API error (400): invalid sender")])

    result = await _processor(store, provider).process(TENANT, T0)

    state = store.states["s1"]
    assert result.delivery_failures == 1
    assert state.status == AutomationStatus.ERROR
    assert state.error_message == "delivery failed: brevo API error (400): invalid sender"
    assert state.next_step_index == 0
    assert store.tracking["acme"].consecutive_failures == 1
    assert store.tracking["acme"].sent_today == 0


@pytest.mark.asyncio
async def test_success_after_failure_resets_consecutive_failures(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    store.enroll("s2", "lead-2", when=T0 + timedelta(seconds=1))
    provider = DummyProvider(outcomes=[DeliveryFailure("boom"), None])

    await _processor(store, provider).process(TENANT, T0 + timedelta(seconds=5))

    assert store.states["s1"].status == AutomationStatus.ERROR
    assert store.states["s2"].status == AutomationStatus.COMPLETED
    assert store.tracking["acme"].consecutive_failures == 0


@pytest.mark.asyncio
async def test_timeout_keeps_state_for_retry(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    provider = DummyProvider(delay=1.0)

    result = await _processor(store, provider, send_timeout=0.01).process(TENANT, T0)

    state = store.states["s1"]
    assert result.delivery_failures == 1
    assert result.states_committed == 0
    assert state.status == AutomationStatus.ACTIVE
    assert state.next_step_index == 0
    assert store.tracking["acme"].consecutive_failures == 1


@pytest.mark.asyncio
async def test_breaker_trips_mid_run_and_stops_sending(store):
    store.automations.append(_automation(SEND))
    for idx in range(3):
        store.enroll(f"s{idx}", f"lead-{idx}", when=T0 - timedelta(minutes=3 - idx))
    provider = DummyProvider(outcomes=[DeliveryFailure("down"), DeliveryFailure("down")])

    result = await _processor(store, provider).process(TENANT, T0)

    tracking = store.tracking["acme"]
    assert result.delivery_failures == 2
    assert result.skipped_circuit_breaker == 1
    assert tracking.circuit_breaker_tripped_at == T0
    assert store.states["s2"].status == AutomationStatus.ACTIVE
    # Updates gathered before the trip are still committed.
    assert result.states_committed == 2


@pytest.mark.asyncio
async def test_open_breaker_skips_tenant_without_reading_states(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    store.tracking["acme"] = QuotaTracking(
        last_daily_reset_at=T0,
        last_hourly_reset_at=T0,
        consecutive_failures=2,
        circuit_breaker_tripped_at=T0 - timedelta(minutes=10),
    )
    provider = DummyProvider()

    result = await _processor(store, provider).process(TENANT, T0)

    assert result.skipped_circuit_breaker == 1
    assert store.state_reads == 0
    assert provider.sent == []
    assert "skipped (circuit breaker open)" in result.detail()


@pytest.mark.asyncio
async def test_threshold_without_timestamp_is_stamped(store):
    store.tracking["acme"] = QuotaTracking(
        last_daily_reset_at=T0, last_hourly_reset_at=T0, consecutive_failures=2
    )

    await _processor(store, DummyProvider()).process(TENANT, T0)

    assert store.tracking["acme"].circuit_breaker_tripped_at == T0


@pytest.mark.asyncio
async def test_trial_after_cooldown_closes_breaker(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    store.enroll("s2", "lead-2", when=T0 + timedelta(seconds=1))
    store.tracking["acme"] = QuotaTracking(
        last_daily_reset_at=T0,
        last_hourly_reset_at=T0,
        consecutive_failures=2,
        circuit_breaker_tripped_at=T0 - timedelta(minutes=31),
    )
    provider = DummyProvider()

    result = await _processor(store, provider).process(TENANT, T0 + timedelta(seconds=5))

    assert result.sends == 2
    assert store.tracking["acme"].circuit_breaker_tripped_at is None
    assert store.tracking["acme"].consecutive_failures == 0


@pytest.mark.asyncio
async def test_failed_trial_reopens_breaker(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    store.enroll("s2", "lead-2", when=T0 + timedelta(seconds=1))
    store.tracking["acme"] = QuotaTracking(
        last_daily_reset_at=T0,
        last_hourly_reset_at=T0,
        consecutive_failures=2,
        circuit_breaker_tripped_at=T0 - timedelta(minutes=31),
    )
    now = T0 + timedelta(seconds=5)
    provider = DummyProvider(outcomes=[DeliveryFailure("still down")])

    result = await _processor(store, provider).process(TENANT, now)

    assert result.delivery_failures == 1
    assert result.skipped_circuit_breaker == 1
    assert store.tracking["acme"].circuit_breaker_tripped_at == now
    assert store.states["s2"].status == AutomationStatus.ACTIVE


@pytest.mark.asyncio
async def test_incomplete_credentials_skip_without_touching_quota(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    tenant = TENANT.model_copy(update={"credentials": {"brevo": {"sender_email": "x@acme.test"}}})
    provider = DummyProvider()

    result = await _processor(store, provider).process(tenant, T0)

    assert result.configuration_errors == 1
    assert provider.sent == []
    assert store.states["s1"].status == AutomationStatus.ACTIVE
    assert store.tracking["acme"].consecutive_failures == 0


@pytest.mark.asyncio
async def test_unknown_provider_on_automation_is_configuration_error(store):
    store.automations.append(_automation(SEND, delivery={"provider": "mailgun"}))
    store.enroll("s1", "lead-1")

    result = await _processor(store, DummyProvider()).process(TENANT, T0)

    assert result.configuration_errors == 1
    assert result.sends == 0


@pytest.mark.asyncio
async def test_orphans_are_skipped(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1")
    store.enroll("s2", "lead-2", automation_id="deleted")
    store.leads.pop("lead-1")

    result = await _processor(store, DummyProvider()).process(TENANT, T0)

    assert result.orphans == 2
    assert store.states["s1"].status == AutomationStatus.ACTIVE
    assert store.states["s2"].status == AutomationStatus.ACTIVE


@pytest.mark.asyncio
async def test_states_not_yet_due_are_untouched(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1", when=T0 + timedelta(hours=1))
    provider = DummyProvider()

    result = await _processor(store, provider).process(TENANT, T0)

    assert result.steps_advanced == 0
    assert provider.sent == []


@pytest.mark.asyncio
async def test_paging_visits_states_behind_a_blocked_prefix(store):
    store.automations.append(_automation(SEND))
    store.automations.append(
        AutomationDefinition(id="drip", tenant_id="acme", steps=[{"type": "delay", "duration": 1}])
    )
    for idx in range(5):
        store.enroll(f"s{idx}", f"lead-{idx}", when=T0 - timedelta(minutes=10 - idx))
    store.enroll("late", "lead-late", automation_id="drip", when=T0 - timedelta(minutes=1))
    store.tracking["acme"] = QuotaTracking(
        last_daily_reset_at=T0, last_hourly_reset_at=T0, sent_today=2, sent_this_hour=2
    )

    result = await _processor(store, DummyProvider(), page_size=2).process(TENANT, T0)

    assert result.skipped_quota == 5
    assert result.steps_advanced == 1
    assert store.states["late"].next_step_index == 1
    assert store.states["late"].status == AutomationStatus.COMPLETED
    # Three full pages, then an empty one.
    assert store.state_reads == 4


@pytest.mark.asyncio
async def test_exhausted_state_completes_before_it_is_due(store):
    store.automations.append(_automation(SEND))
    store.enroll("s1", "lead-1", when=T0 + timedelta(hours=1), index=1)
    provider = DummyProvider()

    result = await _processor(store, provider).process(TENANT, T0)

    assert result.steps_advanced == 1
    assert provider.sent == []
    assert store.states["s1"].status == AutomationStatus.COMPLETED
    assert store.states["s1"].next_step_time == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_full_sequence_delay_then_send_completes(store):
    store.automations.append(_automation({"type": "delay", "duration": 1, "unit": "hours"}, SEND))
    store.enroll("s1", "lead-1")
    provider = DummyProvider()
    processor = _processor(store, provider)

    first = await processor.process(TENANT, T0)
    state = store.states["s1"]
    assert first.steps_advanced == 1
    assert state.next_step_index == 1
    assert state.next_step_time == T0 + timedelta(hours=1)
    assert state.status == AutomationStatus.ACTIVE
    assert provider.sent == []

    early = await processor.process(TENANT, T0 + timedelta(minutes=30))
    assert early.steps_advanced == 0
    assert provider.sent == []

    last = await processor.process(TENANT, T0 + timedelta(hours=1))
    state = store.states["s1"]
    assert last.sends == 1
    assert state.next_step_index == 2
    assert state.status == AutomationStatus.COMPLETED
    assert provider.sent[0].to == "lead-1@example.com"


@pytest.mark.asyncio
async def test_reactivated_state_retries_the_same_step(store):
    store.automations.append(_automation(SEND, {"type": "delay", "duration": 1}))
    store.enroll("s1", "lead-1")
    provider = DummyProvider(outcomes=[DeliveryFailure("mailbox unavailable")])
    processor = _processor(store, provider)

    await processor.process(TENANT, T0)
    failed = store.states["s1"]
    assert failed.status == AutomationStatus.ERROR

    # Error states are not picked up until reactivated.
    idle = await processor.process(TENANT, T0 + timedelta(minutes=1))
    assert idle.sends == 0

    store.states["s1"] = failed.model_copy(update={"status": AutomationStatus.ACTIVE, "error_message": None})
    retry = await processor.process(TENANT, T0 + timedelta(minutes=2))

    state = store.states["s1"]
    assert retry.sends == 1
    assert state.next_step_index == 1
    assert state.status == AutomationStatus.ACTIVE
    assert store.tracking["acme"].consecutive_failures == 0


def test_send_gate_raises_quota_and_breaker_errors(store):
    processor = _processor(store, DummyProvider())
    tracking = QuotaTracking.initial(T0)
    processor.check_send_allowed(tracking, QUOTAS, T0)

    full = tracking.model_copy(update={"sent_this_hour": 2, "sent_today": 2})
    with pytest.raises(QuotaExceeded, match="hourly 2/2"):
        processor.check_send_allowed(full, QUOTAS, T0)

    tripped = tracking.model_copy(update={"consecutive_failures": 2, "circuit_breaker_tripped_at": T0})
    with pytest.raises(CircuitOpen) as exc_info:
        processor.check_send_allowed(tripped, QUOTAS, T0 + timedelta(minutes=5))
    assert exc_info.value.code == "circuit_open"
    processor.check_send_allowed(tripped, QUOTAS, T0 + timedelta(minutes=30))


@pytest.mark.asyncio
async def test_sender_identity_precedence(store):
    store.automations.append(
        _automation(SEND, delivery={"sender_email": "promo@acme.test", "sender_name": "Promo"})
    )
    store.enroll("s1", "lead-1")
    provider = DummyProvider()

    await _processor(store, provider).process(TENANT, T0)

    assert provider.sent[0].sender_email == "promo@acme.test"
    assert provider.sent[0].sender_name == "Promo"
