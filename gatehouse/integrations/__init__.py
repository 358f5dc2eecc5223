"""Host framework adapters.

Import the adapter module directly, e.g.
``from gatehouse.integrations.starlette import AuthMiddleware``.
"""
