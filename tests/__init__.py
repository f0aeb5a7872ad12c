"""
REI API Test Suite

Test categories:
- test_header_index.py - Header normalisation and alias lookup
- test_utils.py - Cell value parsing helpers
- test_range_store.py - A1 refs and the in-memory store
- test_aggregation_cache.py - TTL, single-flight and stale-serving
- test_production_sync.py - Control cell, row selection and overwrite
- test_background_tasks.py - Timer workers
- test_actions.py - Dashboard actions
- test_routes.py - HTTP endpoints
- test_env_config.py - Environment validation
"""
