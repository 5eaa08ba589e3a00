# pipeline/__init__.py
# ============================================================================
# SETTLEMENT & WEBHOOK FAN-OUT PIPELINE
# ============================================================================
