# =============================================================================
# API Package: Thin FastAPI Surface
# =============================================================================
#   - app.py: create_app(), lifespan, domain error → HTTP status mapping
#   - deps.py: AppContext dependency
#   - shipping.py: conversation turns, booking, invoice uploads
#   - documents.py: document uploads
#   - jobs.py: job inspection
#   - tracking.py: shipment tracking
#   - health.py: health + queue policies
#
# Run with: uvicorn freight_agent.api.app:create_app --factory
# =============================================================================
