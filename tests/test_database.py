"""
Tests for the wallet database (quote store, mints, history).
"""

import threading

import pytest

from cashu_wallet.database import MintQuote, QuoteState, WalletDatabase


MINT_URL = "https://mint.example.com"
OTHER_MINT = "https://other.example.com"


@pytest.fixture
def database(tmp_path):
    db = WalletDatabase(str(tmp_path / "wallet.db"))
    yield db
    db.close()


def _quote(quote_id="q1", mint_url=MINT_URL, state=QuoteState.UNPAID, **kwargs):
    return MintQuote(mint_url=mint_url, quote_id=quote_id, request="lnbc1" + quote_id,
                     amount=kwargs.pop("amount", 1000), state=state, **kwargs)


def test_add_and_list_mints(database):
    database.add_mint(MINT_URL)
    database.add_mint(OTHER_MINT, trusted=False)
    database.add_mint(MINT_URL)  # no duplicate

    mints = database.get_mints()
    assert [m["mint_url"] for m in mints] == [MINT_URL, OTHER_MINT]
    assert mints[0]["trusted"] is True
    assert mints[1]["trusted"] is False
    assert database.get_default_mint() == MINT_URL


def test_default_mint_is_none_without_mints(database):
    assert database.get_default_mint() is None


def test_store_and_get_quote(database):
    database.store_mint_quote(_quote(expiry=1_900_000_000))

    quote = database.get_mint_quote(MINT_URL, "q1")
    assert quote is not None
    assert quote.state == QuoteState.UNPAID
    assert quote.amount == 1000
    assert quote.request == "lnbc1q1"
    assert quote.expiry == 1_900_000_000
    assert quote.created_at > 0


def test_quote_key_is_mint_and_quote_id(database):
    database.store_mint_quote(_quote("same", MINT_URL, amount=10))
    database.store_mint_quote(_quote("same", OTHER_MINT, amount=20))

    assert database.get_mint_quote(MINT_URL, "same").amount == 10
    assert database.get_mint_quote(OTHER_MINT, "same").amount == 20
    assert database.get_mint_quote(MINT_URL, "missing") is None


def test_storing_quote_twice_keeps_original(database):
    database.store_mint_quote(_quote(amount=10))
    database.update_mint_quote_state(MINT_URL, "q1", QuoteState.ISSUED)
    database.store_mint_quote(_quote(amount=99))

    quote = database.get_mint_quote(MINT_URL, "q1")
    assert quote.amount == 10
    assert quote.state == QuoteState.ISSUED


def test_update_state_with_expected_guard(database):
    database.store_mint_quote(_quote())

    assert database.update_mint_quote_state(
        MINT_URL, "q1", QuoteState.ISSUED, expected_states=[QuoteState.UNPAID, QuoteState.PAID]
    ) is True
    # ISSUED never moves back to PAID
    assert database.update_mint_quote_state(
        MINT_URL, "q1", QuoteState.PAID, expected_states=[QuoteState.UNPAID]
    ) is False
    assert database.get_mint_quote(MINT_URL, "q1").state == QuoteState.ISSUED


def test_update_unknown_quote_returns_false(database):
    assert database.update_mint_quote_state(MINT_URL, "nope", QuoteState.PAID) is False


def test_list_quotes_by_state(database):
    database.store_mint_quote(_quote("a"))
    database.store_mint_quote(_quote("b", state=QuoteState.PAID))
    database.store_mint_quote(_quote("c", state=QuoteState.ISSUED))

    open_ids = {q.quote_id for q in database.list_mint_quotes(
        states=[QuoteState.UNPAID, QuoteState.PAID])}
    assert open_ids == {"a", "b"}
    assert database.list_mint_quotes(states=[]) == []
    assert len(database.list_mint_quotes()) == 3


def test_history_is_newest_first_and_paginated(database):
    for i in range(5):
        database.add_history("mint", MINT_URL, amount=i + 1, quote_id=f"q{i}")

    page = database.get_history(limit=2, offset=0)
    assert [h["quote_id"] for h in page] == ["q4", "q3"]
    page2 = database.get_history(limit=2, offset=2)
    assert [h["quote_id"] for h in page2] == ["q2", "q1"]


def test_reads_from_another_thread_see_writes(database):
    database.store_mint_quote(_quote())
    seen = {}

    def reader():
        seen["state"] = database.get_mint_quote(MINT_URL, "q1").state
        database.close()

    database.update_mint_quote_state(MINT_URL, "q1", QuoteState.ISSUED)
    t = threading.Thread(target=reader)
    t.start()
    t.join()

    assert seen["state"] == QuoteState.ISSUED


def test_quote_expiry():
    assert _quote(expiry=None).is_expired(now=10) is False
    assert _quote(expiry=100).is_expired(now=99) is False
    assert _quote(expiry=100).is_expired(now=100) is True
