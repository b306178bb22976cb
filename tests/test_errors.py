from distributor.errors import LedgerError, RelayError, sanitize_error


def test_relay_error_carries_status_and_code():
    e = RelayError("sendTransaction error: too many requests", status=429, code=-32005)
    assert str(e) == "sendTransaction error: too many requests (status=429, code=-32005)"
    assert str(RelayError("plain")) == "plain"


def test_sanitize_prefixes_foreign_exceptions():
    assert sanitize_error(ValueError("boom")) == "ValueError: boom"
    assert sanitize_error(LedgerError("boom")) == "boom"
    assert sanitize_error(TimeoutError()) == "TimeoutError: TimeoutError"


def test_sanitize_redacts_secrets():
    blob = "12000022" + "AB" * 100
    seed = "sEdTM1uX8pu2do5XvTnutH6HsouMaM2"
    text = sanitize_error(
        f"submit of {blob} failed; seed {seed}; Authorization: Bearer abc.def-ghi_123; "
        "url https://gw.example/v1/mainnet?apiKey=supersecret&x=1"
    )
    assert blob not in text and "[redacted-blob]" in text
    assert seed not in text and "[redacted-seed]" in text
    assert "abc.def-ghi_123" not in text
    assert "supersecret" not in text and "apiKey=[redacted]" in text


def test_sanitize_keeps_transaction_hashes():
    txid = "E08D6E9754025BA2534A78707605E0601F03ACE063687A0CA1BDDACFCD1698C7"
    assert txid in sanitize_error(f"confirmation timeout for {txid}")


def test_sanitize_truncates():
    assert len(sanitize_error("x" * 2000)) == 500
    assert sanitize_error("y" * 50, max_chars=10) == "y" * 10
