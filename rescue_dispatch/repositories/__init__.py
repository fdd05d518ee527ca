from rescue_dispatch.repositories.drivers import DriverRepository
from rescue_dispatch.repositories.promos import PromoRepository
from rescue_dispatch.repositories.rescues import RescueRepository

__all__ = ["DriverRepository", "PromoRepository", "RescueRepository"]
