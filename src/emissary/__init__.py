"""Public package API for emissary."""

from emissary.api import connect_worker
from emissary.api import expose
from emissary.api import wrap
from emissary.channel import Channel
from emissary.channel import LocalChannel
from emissary.channel import PipeChannel
from emissary.channel import create_local_channel_pair
from emissary.descriptors import ExposureDescriptor
from emissary.descriptors import ExposureKind
from emissary.descriptors import MemberDescriptor
from emissary.errors import EmissaryError
from emissary.errors import EmissaryProtocolError
from emissary.errors import ExposureValidationError
from emissary.errors import RemoteExecutionError
from emissary.errors import StaleReferenceError
from emissary.errors import TeardownTimeoutError
from emissary.host import HostController
from emissary.registry import ExposureRegistry
from emissary.registry import serve
from emissary.standin import StandIn

__all__: list[str] = [
    "connect_worker",
    "expose",
    "wrap",
    "serve",
    "Channel",
    "LocalChannel",
    "PipeChannel",
    "create_local_channel_pair",
    "ExposureDescriptor",
    "ExposureKind",
    "MemberDescriptor",
    "ExposureRegistry",
    "HostController",
    "StandIn",
    "EmissaryError",
    "EmissaryProtocolError",
    "ExposureValidationError",
    "RemoteExecutionError",
    "StaleReferenceError",
    "TeardownTimeoutError",
]
