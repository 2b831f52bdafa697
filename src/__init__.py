"""Strategy Blocks - visual trading strategies as trees of blocks.

Core Modules:
- strategy_tree: block tree types, materializer, mutation service, transfer
- data.database: SQLAlchemy models, repository and session management
- api: FastAPI routers for strategies and blocks

Supporting Modules:
- utils: logging setup and structured tree event logging
"""
