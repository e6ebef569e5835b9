"""API routers."""

from errand_ledger_service.routers import health, payments, settings, tasks, users, wallets

__all__ = ["health", "payments", "settings", "tasks", "users", "wallets"]
