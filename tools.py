import math
from typing import Iterable


class MathTools:
    """Provides essential mathematical utilities for workout calculations."""

    EPL_COEFF: float = 0.0333
    EARTH_RADIUS_M: float = 6371008.8

    @staticmethod
    def clamp(value: float, min_value: float, max_value: float) -> float:
        """Clamp ``value`` to the inclusive range [min_value, max_value]."""
        if min_value > max_value:
            raise ValueError("min_value must not exceed max_value")
        return max(min_value, min(value, max_value))

    @classmethod
    def epley_1rm(cls, weight: float, reps: int, factor: float = 1.0) -> float:
        """Return the estimated one-rep max using the Epley formula."""
        if reps < 0:
            raise ValueError("reps must be non-negative")
        rep_term = min(reps, 8)
        return weight * (1 + cls.EPL_COEFF * rep_term) * factor

    @staticmethod
    def volume(sets: Iterable[tuple[int, float]]) -> float:
        """Compute training volume as the sum of reps times weight."""
        vol = 0.0
        for reps, weight in sets:
            vol += max(0, reps) * max(0.0, weight)
        return vol

    @classmethod
    def haversine_m(
        cls, lat1: float, lon1: float, lat2: float, lon2: float
    ) -> float:
        """Great-circle distance in metres between two coordinates."""
        phi1 = math.radians(lat1)
        phi2 = math.radians(lat2)
        d_phi = math.radians(lat2 - lat1)
        d_lambda = math.radians(lon2 - lon1)
        a = (
            math.sin(d_phi / 2) ** 2
            + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
        )
        return 2 * cls.EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))

    @staticmethod
    def percent_change(current: float, previous: float) -> float | None:
        """Week-over-week style delta; ``None`` when both values are zero."""
        if current == 0 and previous == 0:
            return None
        return (current - previous) / max(previous, 1) * 100


class WeightConverter:
    """Utility for converting between kg and lb."""

    KG_TO_LB = 2.2046226218

    @staticmethod
    def kg_to_lb(kg: float) -> float:
        return round(kg * WeightConverter.KG_TO_LB, 2)

    @staticmethod
    def lb_to_kg(lb: float) -> float:
        return round(lb / WeightConverter.KG_TO_LB, 2)


class DistanceConverter:
    """Utility for converting between kilometres and miles."""

    KM_TO_MI = 0.621371

    @staticmethod
    def km_to_mi(km: float) -> float:
        return km * DistanceConverter.KM_TO_MI

    @staticmethod
    def mi_to_km(mi: float) -> float:
        return mi / DistanceConverter.KM_TO_MI
