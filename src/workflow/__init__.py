"""Board workflow rules (columns, guarded transitions, id allocation).

Everything in this package operates on a `SQLiteStore` and a frozen `AppConfig`
passed in by the caller; it never reaches the agent service or the HTTP layer.
"""
