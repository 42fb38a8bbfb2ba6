from chatbot_resilience.services.fallback_data_service import FallbackDataService, PrimaryDataSource

__all__ = [
    "FallbackDataService",
    "PrimaryDataSource",
]
