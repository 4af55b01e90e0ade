"""
security.py - API key check for the administrative endpoints
"""
import os
from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

# Define the API Key header scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key_header: str = Security(api_key_header)) -> str:
    """
    Validate the API Key and return it.

    Without ``CDC_API_KEY`` set, every request is accepted as "dev-key".
    """
    expected_key = os.getenv("CDC_API_KEY")

    if not expected_key:
        return "dev-key"

    if api_key_header == expected_key:
        return api_key_header

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API Key"
    )
