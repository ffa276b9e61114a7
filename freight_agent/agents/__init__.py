# =============================================================================
# Agents Package: Conversation Workflow
# =============================================================================
#   - workflow.py: LangGraph turn graph, phase derivation, versioned persist
#   - responder.py: Structured reply generation ({readyToQuote, reply})
# =============================================================================
