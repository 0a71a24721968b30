# /chatflow/dependencies/tenant.py

from fastapi import Header, HTTPException, status

# Organization scoping for the chatbot routes. Authentication itself happens
# upstream; by the time a request reaches this service the gateway has put the
# caller's organization into the X-Organization-Id header.


def get_organization_id(x_organization_id: str | None = Header(default=None)) -> str:
    """
    Returns the organization the request acts on.

    Raises:
        HTTPException 400: If the header is missing or blank
    """
    organization_id = (x_organization_id or "").strip()
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization ID required"
        )
    return organization_id
