from .base import Discovery
from .lookupd import LookupdDiscovery
from .static import StaticDiscovery
