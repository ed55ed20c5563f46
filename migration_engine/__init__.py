"""
ETL Migration Engine

A staged extract-transform-load toolkit for migrating tables between
heterogeneous database engines.

Supports:
- Relational sources and targets (PostgreSQL, MySQL, SQL Server)
- Document-store sources and targets (MongoDB, CouchDB)
- Push-down column transformations and cross-engine type coercion
- Auto-mapping suggestions for tables and columns
- Dimension-before-fact load ordering with source-to-target ID mapping
- Attachment migration from document stores into an object store
- Validation and migration reporting
"""

__version__ = "0.1.0"
