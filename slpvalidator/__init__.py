from .version import SLPVALIDATOR_VERSION
from .simple_config import SimpleConfig
from . import bitcoin
from . import transaction
from .transaction import Transaction
from .network import ElectrumXFetcher, ServerAddr
from .slp import (Message, Build, decode, encode, decode_output_ownership,
                  LocalValidator, ProxyValidator, Validity, InvalidReason)
from .logging import get_logger


__version__ = SLPVALIDATOR_VERSION

_logger = get_logger(__name__)


# Ensure that asserts are enabled. For sanity and paranoia, we require this.
# Code *should not rely* on asserts being enabled. In particular, safety and security checks should
# always explicitly raise exceptions. However, this rule is mistakenly broken occasionally...
try:
    assert False  # noqa: B011
except AssertionError:
    pass
else:
    raise ImportError("Running with asserts disabled. Refusing to continue. Exiting...")
