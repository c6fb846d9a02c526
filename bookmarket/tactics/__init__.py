from .availability import CircuitBreaker, CircuitState, get_circuit_breaker, reset_circuit_breakers

__all__ = ["CircuitBreaker", "CircuitState", "get_circuit_breaker", "reset_circuit_breakers"]
