"""
Tumulte — Gamification Engine for Tabletop Streams
====================================================
Lets Twitch audiences push on a live Virtual TableTop session: channel-point
redemptions fill a gauge, critical dice rolls fire events, and the resulting
actions (inverted dice, blessed or sealed spells, buffed monsters) are sent
to Foundry VTT while Twitch rewards and EventSub subscriptions are kept in
sync.

Package layout::

    tumulte/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Tunable defaults (cooldowns, backoff, priorities)
    ├── errors.py          # Exception taxonomy surfaced to callers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # System gamification events
    ├── engine/            # Pure calculation, no I/O
    │   ├── events.py      # Value objects (rolls, evaluation/result data)
    │   ├── configs.py     # Typed trigger/action config variants
    │   ├── registry.py    # Trigger/action handler registries
    │   ├── triggers.py    # Trigger handlers
    │   ├── evaluator.py   # TriggerEvaluator
    │   ├── objective.py   # ObjectiveCalculator
    │   ├── rules.py       # Criticality + item category rule matching
    │   ├── notifications.py # Twitch chat message templates
    │   └── backoff.py     # Orphan deletion retry policy
    ├── services/
    │   ├── actions/       # Action handlers (VTT side effects)
    │   ├── instance_manager.py   # Instance state machine
    │   ├── action_executor.py    # Handler dispatch + chat notification
    │   ├── gamification_service.py # Orchestration façade
    │   ├── reward_manager.py     # Twitch channel point reward sync
    │   ├── orphan_detector.py    # Orphaned reward queries
    │   ├── reward_reconciler.py  # Orphan cleanup + full reward reconciliation
    │   ├── eventsub_reconciler.py # EventSub subscription reconciliation
    │   ├── refund_service.py     # Refunds for expired gauges
    │   ├── preflight.py          # Pre-flight registry + runner
    │   ├── preflight_checks.py   # Built-in pre-flight checks
    │   ├── twitch_client.py      # Helix API client (httpx)
    │   ├── foundry_bridge.py     # VTT WebSocket hub + command adapter
    │   ├── vtt_state.py          # Actor / combat / item rule lookups
    │   ├── notifier.py           # Twitch chat notifier
    │   ├── container.py          # Two-phase service wiring
    │   └── scheduler.py          # Periodic sweeps
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Dependency providers
        └── routes/        # REST + webhook + WebSocket endpoints
"""

__version__ = "0.1.0"
