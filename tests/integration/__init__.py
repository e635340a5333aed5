"""
Integration Tests Package for SwapHub

These tests run the services end to end over real storage backends and
threads rather than mocks:
- SQLAlchemy unit of work on an in-memory SQLite database
- Concurrent confirms and favorite toggles at one station
"""
