# =============================================================================
# Models Package: Pydantic V2 Schemas
# =============================================================================
#   - base.py: CamelModel (camelCase wire names, snake_case attributes)
#   - session.py: Session checkpoint, messages, shipment fields, phases
#   - quote.py: Immutable quote result and carrier offers
#   - jobs.py: Background job records and payloads
#   - analysis.py: Document classification and invoice extraction results
#   - requests.py / responses.py: API contract
#
# These are separate from the ORM models in freight_agent/db/models.py.
# =============================================================================
