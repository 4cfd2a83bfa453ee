"""Vector indexing services.

Modules:
    - circuit_breaker / retry_service: resilience around provider calls
    - dependency_tracker: one-hop relation lookups over business tables
    - aggregation_service: event -> aggregated text -> embedding -> upsert
    - search_service: query and more-like-this search
    - monitoring_service: metrics, stats, health and alerts
    - event_dispatcher: bounded queue + worker pool
    - rpc_service: public request/response operations
    - service_factory: wiring from configuration
"""
