"""eth_token_bridge package root.

Provision, register and migrate a parent/child chain token bridge
over retryable tickets.

- :py:mod:`eth_token_bridge.fees` prices cross-domain calls

- :py:mod:`eth_token_bridge.messages` tracks their delivery

- :py:mod:`eth_token_bridge.deployment`, :py:mod:`eth_token_bridge.registration`
  and :py:mod:`eth_token_bridge.migration` orchestrate the bridge lifecycle

"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""

    # Use Python tuple comparison for version numbers
    # https://stackoverflow.com/a/1093331/315168
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"eth-token-bridge needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
