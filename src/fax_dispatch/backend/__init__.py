"""Fax backend implementations: the REST client and a dry-run simulation."""

from fax_dispatch.backend.client import FaxApiClient
from fax_dispatch.backend.simulated import SimulatedFaxBackend

__all__ = ["FaxApiClient", "SimulatedFaxBackend"]
