from .discovery import DiscoveryDriver, DiscoverySummary
from .scoring import ScoringDriver, ScoringSummary, compute_growth, compute_score
from .seeder import SeedConfig, SeedResult, seed_tasks

__all__ = [
    "DiscoveryDriver",
    "DiscoverySummary",
    "ScoringDriver",
    "ScoringSummary",
    "SeedConfig",
    "SeedResult",
    "compute_growth",
    "compute_score",
    "seed_tasks",
]
