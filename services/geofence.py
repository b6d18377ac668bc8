import math
from typing import Optional
from functools import lru_cache

from config import config

EARTH_RADIUS_M = 6_371_000


# Haversine formula to calculate distance between two lat/lon points
# Кешируем результаты: курьер часто присылает одну и ту же точку повторно
@lru_cache(maxsize=1000)
def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Вычисляет расстояние между двумя точками на Земле по формуле Haversine, в метрах.
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2)**2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def resolve_radius(configured: Optional[int]) -> int:
    """Радиус партнёра или значение по умолчанию. 0 и None считаются «не задан»."""
    return configured or config.DEFAULT_COMPLETION_RADIUS_M


def is_within_radius(distance_m: float, radius_m: float) -> bool:
    return distance_m <= radius_m


def has_coordinates(lat: Optional[float], lon: Optional[float]) -> bool:
    if lat is None or lon is None:
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180
