"""
Multi-Tenant Service: Tenant Validation and Scoping Helpers

WHY: Centralize tenant validation for reuse across orchestrators.
Every core operation receives an explicit org_id from the caller, and every
id taken from client input is resolved through these helpers.

SECURITY INVARIANTS:
1. A row that exists in another organization is reported exactly like a row
   that does not exist (same exception, same message)
2. Cross-tenant misses are logged at WARNING with both org ids; the error
   returned to the caller never mentions the owning org
3. Helpers never read request state; org_id is always a parameter

USAGE:
    from .tenant_service import require_location_in_org

    location = require_location_in_org(payload.location_id, org_id)
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import CashDrawer, Customer, Invoice, Location, Organization, Product
from ..validation import NotFoundError
from .concurrency import lock_for_update

logger = logging.getLogger(__name__)


class TenantAccessError(NotFoundError):
    """Raised when an entity is missing or owned by another organization."""


def require_in_org(model, entity_id: int, org_id: int, *, label: str, lock: bool = False):
    """
    Load `model` by id and ensure it belongs to org_id.

    Raises TenantAccessError("<label> not found") for both a missing row and
    a row owned by another organization.
    """
    query = db.session.query(model).filter_by(id=entity_id)
    if lock:
        query = lock_for_update(query)
    obj = query.first()

    if obj is None:
        logger.info("%s %s not found for org %s", label, entity_id, org_id)
        raise TenantAccessError(f"{label} not found", details={"id": entity_id})

    if obj.org_id != org_id:
        # Don't reveal it exists in another org
        logger.warning(
            "Cross-tenant access denied: %s %s belongs to org %s, not %s",
            label, entity_id, obj.org_id, org_id,
        )
        raise TenantAccessError(f"{label} not found", details={"id": entity_id})

    return obj


def require_location_in_org(location_id: int, org_id: int) -> Location:
    return require_in_org(Location, location_id, org_id, label="Location")


def require_locations_in_org(location_ids: list[int], org_id: int) -> list[Location]:
    return [require_location_in_org(location_id, org_id) for location_id in location_ids]


def require_product_in_org(product_id: int, org_id: int, *, require_active: bool = False) -> Product:
    product = require_in_org(Product, product_id, org_id, label="Product")
    if require_active and not product.is_active:
        raise TenantAccessError("Product not found", details={"id": product_id})
    return product


def require_customer_in_org(customer_id: int, org_id: int, *, lock: bool = False) -> Customer:
    return require_in_org(Customer, customer_id, org_id, label="Customer", lock=lock)


def require_drawer_in_org(drawer_id: int, org_id: int, *, lock: bool = False) -> CashDrawer:
    return require_in_org(CashDrawer, drawer_id, org_id, label="Cash drawer", lock=lock)


def require_invoice_in_org(invoice_id: int, org_id: int, *, lock: bool = False) -> Invoice:
    return require_in_org(Invoice, invoice_id, org_id, label="Invoice", lock=lock)


def validate_org_active(org_id: int) -> Organization:
    """
    Validate that an organization exists and is active.

    Raises TenantAccessError if org doesn't exist or is inactive.
    """
    org = db.session.query(Organization).filter_by(id=org_id).first()
    if not org or not org.is_active:
        raise TenantAccessError("Organization not found", details={"id": org_id})
    return org
