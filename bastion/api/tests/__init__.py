"""
BASTION API Test Suite

Test Categories:
1. Store and resolver tests - Grant bookkeeping and permission checks
2. Gate tests - Blocklist, authentication and authorization ordering
3. Audit tests - Recorder, correlation ids, incidents and auto-pinning
4. Route tests - Permission, SOC and authentication endpoints
5. WebSocket tests - Broadcaster, connection manager and message handling

Test Files:
- conftest.py: Shared fixtures (database, app, users, roles, tokens)
- test_permission_store.py: Grant, revoke, page and custom-mode bundles
- test_permission_resolver.py: Effective permission resolution
- test_permission_routes.py: /permissions endpoints
- test_access_gate.py: Request gating end to end
- test_audit_recorder.py: Fire-and-forget audit writes
- test_soc_routes.py: /soc endpoints
- test_auth_routes.py: /auth endpoints
- test_websocket.py: Real-time monitoring

Run Commands:
    # All tests
    pytest bastion/api/tests -v

    # With coverage
    pytest bastion/api/tests --cov=bastion.api --cov-report=html
"""
