from vmfleet.backend.client import MultipassClient
from vmfleet.backend.models import InstanceState, VmImage, VmInstance

__all__ = ["InstanceState", "MultipassClient", "VmImage", "VmInstance"]
