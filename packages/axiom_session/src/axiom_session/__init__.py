from .client import AxiomClient
from .config import AxiomSettings
from .urls import Region

__all__ = ["AxiomClient", "AxiomSettings", "Region"]
