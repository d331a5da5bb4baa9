"""HTTP surface -- FastAPI routers, dependencies and middleware."""
