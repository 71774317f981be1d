import os
from dataclasses import dataclass

BACKENDS = ("memory", "firestore")
OVERPAYMENT_POLICIES = ("accept", "reject")


@dataclass(frozen=True)
class Settings:
    backend: str = "memory"
    data_path: str = "coffee_ledger_data.json"
    firestore_project: str = ""
    firestore_token: str = ""
    # "accept" keeps the historical behaviour: the balance floors at zero
    overpayment_policy: str = "accept"
    recorded_by: str = "admin"
    reconcile_interval: float = 300.0
    max_write_retries: int = 5


def _choice(name: str, choices: tuple[str, ...], default: str) -> str:
    value = os.getenv(name, "").strip().lower()
    return value if value in choices else default


def _number(name: str, cast, default):
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def load_settings() -> Settings:
    return Settings(
        backend=_choice("COFFEE_LEDGER_BACKEND", BACKENDS, "memory"),
        data_path=os.getenv("COFFEE_LEDGER_DATA_PATH", "").strip()
        or "coffee_ledger_data.json",
        firestore_project=os.getenv("FIRESTORE_PROJECT_ID", "").strip(),
        firestore_token=os.getenv("FIRESTORE_TOKEN", "").strip(),
        overpayment_policy=_choice(
            "COFFEE_LEDGER_OVERPAYMENT", OVERPAYMENT_POLICIES, "accept"
        ),
        recorded_by=os.getenv("COFFEE_LEDGER_RECORDED_BY", "").strip() or "admin",
        reconcile_interval=_number("COFFEE_LEDGER_RECONCILE_INTERVAL", float, 300.0),
        max_write_retries=_number("COFFEE_LEDGER_MAX_RETRIES", int, 5),
    )
