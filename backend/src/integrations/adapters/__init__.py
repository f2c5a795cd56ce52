"""
Provider adapter implementations

ADAPTER_CLASSES is the static list registered by build_default_registry.
"""

from .keeptruckin import KeepTruckinAdapter
from .mcleod import McLeodAdapter
from .mercurygate import MercuryGateAdapter
from .omnitracs import OmnitracsAdapter
from .samsara import SamsaraAdapter
from .tmw import TMWAdapter

ADAPTER_CLASSES = (
    KeepTruckinAdapter,
    OmnitracsAdapter,
    SamsaraAdapter,
    McLeodAdapter,
    TMWAdapter,
    MercuryGateAdapter,
)

__all__ = [
    "ADAPTER_CLASSES",
    "KeepTruckinAdapter",
    "McLeodAdapter",
    "MercuryGateAdapter",
    "OmnitracsAdapter",
    "SamsaraAdapter",
    "TMWAdapter",
]
