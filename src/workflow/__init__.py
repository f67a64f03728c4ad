"""Multi-stage workflow engine for a service shop operations console.

This package governs how a unit of work (a lead, an order, an order
line-item, or a service-extension request) moves through named stages:
- Stage registry: ordered stage catalog per pipeline
- Transition engine: forward moves, auto-chaining, backward justification
- History ledger: append-only, newest-first audit trail
- Branch resolver: feedback, extension approval and request approval
- Board projection: kanban grouping and pending filters
- FastAPI application exposing the engine over HTTP
"""
