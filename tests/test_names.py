import pytest

from personachain.errors import ValidationError
from personachain.names import (
    int_to_name,
    is_persona_name,
    name_to_int,
    persona_account_name,
    validate_account_name,
)


def test_known_name_values():
    assert name_to_int("eosio") == 6138663577826885632
    assert name_to_int("sysio") == 14389258095169634304
    assert int_to_name(0) == ""
    assert int_to_name(name_to_int("immutablenpc")) == "immutablenpc"
    assert int_to_name(name_to_int("zeta12345.ai")) == "zeta12345.ai"


@pytest.mark.parametrize("bad", ["", "UPPER", "has space", "toolongname1234", "six6", "a" * 13 + "z"])
def test_invalid_account_names_rejected(bad):
    with pytest.raises(ValidationError):
        validate_account_name(bad)


def test_persona_name_gets_suffix():
    assert persona_account_name("zeta12345") == "zeta12345.ai"
    assert persona_account_name("zeta12345.ai") == "zeta12345.ai"
    assert persona_account_name(" Zeta12345 ") == "zeta12345.ai"


@pytest.mark.parametrize("bad", ["zeta1234", "zeta123456", "zeta12346", "zeta.1234", "zeta12345.io"])
def test_persona_name_rule(bad):
    assert not is_persona_name(bad)
    with pytest.raises(ValidationError):
        persona_account_name(bad)
