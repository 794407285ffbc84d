from ttportal.values import to_int, to_num


def test_to_num_accepts_decimal_comma():
    assert to_num('1,5') == 1.5
    assert to_num(' 2.25 ') == 2.25
    assert to_num(3) == 3.0


def test_to_num_rejects_grouped_numbers():
    assert to_num('1,000') is None
    assert to_num('1.000,5') is None
    assert to_num('1,000,000') is None
    assert to_int('1,000') is None


def test_to_num_rejects_junk():
    assert to_num('') is None
    assert to_num('abc') is None
    assert to_num('inf') is None
