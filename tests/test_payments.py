import payments


def test_utr_must_be_long_enough_and_numeric():
    assert payments.is_valid_utr("123456789012")
    assert payments.is_valid_utr(" 1234567890 ")
    assert not payments.is_valid_utr("123456789")
    assert not payments.is_valid_utr("12345abc9012")
    assert not payments.is_valid_utr("")


def test_deposit_amount_is_whole_and_above_minimum():
    assert payments.parse_deposit_amount("100") == 100
    assert payments.parse_deposit_amount("250.0") == 250
    assert payments.parse_deposit_amount("99") is None
    assert payments.parse_deposit_amount("150.5") is None
    assert payments.parse_deposit_amount("lots") is None
    assert payments.parse_deposit_amount(None) is None


def test_deposit_id_format():
    dep = payments.new_deposit_id(1_700_000_000.123)
    assert dep.startswith("DEP1700000000123")
    assert len(dep) == len("DEP1700000000123") + 5
    assert dep == dep.upper()


def test_payment_note_is_sanitised(monkeypatch):
    monkeypatch.setattr(payments, "PAYMENT_NOTE_PREFIX", "FIRE-")
    assert payments.payment_note("DEP1.2#X") == "FIREDEP1_2X"


def test_upi_link():
    link = payments.upi_link(500, "FIREDEP1", upi_id="shop@upi", upi_name="Fire OTP")
    assert link == "upi://pay?pa=shop@upi&pn=Fire%20OTP&am=500&cu=INR&tn=FIREDEP1"


def test_random_code_alphabet():
    code = payments.random_code(8)
    assert len(code) == 8
    assert set(code) <= set(payments.CODE_ALPHABET)
