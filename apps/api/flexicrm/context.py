from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
# Taken from the bearer token before the session context is loaded.
actor_var: ContextVar[tuple[str, str | None] | None] = ContextVar("actor", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def bind_actor(user_id: str, organization_id: str | None) -> Token[tuple[str, str | None] | None]:
    return actor_var.set((user_id, organization_id))


def get_actor() -> tuple[str | None, str | None]:
    actor = actor_var.get()
    if actor is None:
        return None, None
    return actor


def get_log_context() -> dict[str, str | None]:
    user_id, organization_id = get_actor()
    return {"correlation_id": get_correlation_id(), "user_id": user_id, "organization_id": organization_id}
