from ledger.config import db_pool_size, env_bool, env_int, min_payout_amount, sql_echo
from ledger.database import engine_options


def test_env_int_clamps_and_falls_back(monkeypatch):
    monkeypatch.setenv("LEDGER_DB_POOL_SIZE", "500")
    assert db_pool_size() == 100

    monkeypatch.setenv("LEDGER_DB_POOL_SIZE", "lots")
    assert db_pool_size() == 5

    monkeypatch.setenv("SOME_LIMIT", "-4")
    assert env_int("SOME_LIMIT", 10, minimum=1) == 1


def test_env_bool(monkeypatch):
    monkeypatch.delenv("LEDGER_SQL_ECHO", raising=False)
    assert sql_echo() is False

    monkeypatch.setenv("LEDGER_SQL_ECHO", "TRUE")
    assert sql_echo() is True
    monkeypatch.setenv("SOME_FLAG", "off")
    assert env_bool("SOME_FLAG", default=True) is False


def test_min_payout_amount_default(monkeypatch):
    monkeypatch.delenv("LEDGER_MIN_PAYOUT_CENTS", raising=False)
    assert min_payout_amount() == 1000

    monkeypatch.setenv("LEDGER_MIN_PAYOUT_CENTS", "2500")
    assert min_payout_amount() == 2500


def test_sqlite_engine_shares_connections_across_threads():
    assert engine_options("sqlite:///./ledger.db") == {"connect_args": {"check_same_thread": False}}


def test_server_database_gets_a_tuned_pool(monkeypatch):
    monkeypatch.setenv("LEDGER_DB_POOL_SIZE", "20")
    monkeypatch.setenv("LEDGER_DB_MAX_OVERFLOW", "5")

    options = engine_options("postgresql://ledger@db/ledger")

    assert options["pool_size"] == 20
    assert options["max_overflow"] == 5
    assert options["pool_recycle"] == 1800
    assert options["pool_timeout"] == 30
    assert options["pool_pre_ping"] is True
    assert "connect_args" not in options
