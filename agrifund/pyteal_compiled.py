# Compile the PyTeal escrow program into TEAL source. The node turns the source into bytecode.
from functools import lru_cache

from pyteal import compileTeal, Mode

from .pyteal_src.escrow_app import get_approval, get_clear

TEAL_VERSION = 8


@lru_cache(maxsize=1)
def get_approval_teal() -> str:
    return compileTeal(get_approval(), mode=Mode.Application, version=TEAL_VERSION)


@lru_cache(maxsize=1)
def get_clear_teal() -> str:
    return compileTeal(get_clear(), mode=Mode.Application, version=TEAL_VERSION)
