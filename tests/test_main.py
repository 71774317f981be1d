import py_compile
from pathlib import Path

from coffee_ledger.adapters.firestore import FirestoreDocumentStore
from coffee_ledger.adapters.memory import MemoryDocumentStore
from coffee_ledger.config import Settings
from coffee_ledger.main import build_store, main


def test_main_compiles() -> None:
    py_compile.compile(Path("coffee_ledger/main.py"), doraise=True)


def test_build_store_picks_backend(tmp_path) -> None:
    memory = build_store(Settings(data_path=str(tmp_path / "data.json")))
    assert isinstance(memory, MemoryDocumentStore)

    firestore = build_store(Settings(backend="firestore", firestore_project="coffee"))
    assert isinstance(firestore, FirestoreDocumentStore)
    assert firestore.project == "coffee"
    assert firestore.token is None


def test_main_without_firestore_project_exits(monkeypatch) -> None:
    monkeypatch.setenv("COFFEE_LEDGER_BACKEND", "firestore")
    monkeypatch.delenv("FIRESTORE_PROJECT_ID", raising=False)
    assert main() == 2
