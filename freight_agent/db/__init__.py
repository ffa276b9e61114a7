# =============================================================================
# Database Package: Sync SQLAlchemy
# =============================================================================
#   - engine.py: Database handle (engine + session factory)
#   - models.py: ORM models (documents, invoices, shipping_quotes, shipments)
# =============================================================================
