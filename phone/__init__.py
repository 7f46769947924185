"""phone/ -- National phone number normalization and classification.

Layer rule: phone/ imports only stdlib, pydantic models from core/ and nothing
from auth/. The external coordinator composes phone/ and auth/.
"""
