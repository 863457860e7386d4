from .db import (
    session_scope,
    create_all,
    dispose_engine,
    upsert_profile,
    insert_medication,
    fetch_profiles,
    find_profile_by_phone,
    create_dose_event,
    get_dose_event,
    fetch_pending_for_user,
    fetch_statuses,
    fetch_confirmation_candidates,
    fetch_escalation_candidates,
    confirmable_doses,
    resolve_dose,
    snooze_dose,
    mark_guard,
)  # noqa: F401
