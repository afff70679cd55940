"""
A small, authenticating HTTP forward proxy with an optional destination allow-list.
"""

from ._proxy import (
    ForwardProxy,
    SynchronousForwardProxy,
)
from ._config import (
    Port,
    Domain,
    Configuration,
    parse_configuration_v1,
    load_configuration_from_file,
    load_configuration_from_environment,
)
from ._auth import (
    verify,
    allowed,
)
