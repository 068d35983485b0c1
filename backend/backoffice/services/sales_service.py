"""
Sales Service

WHY: A sale is the most frequent stock-moving operation and the one most
exposed to concurrent writers (several tills selling the same product).

DESIGN PRINCIPLES:
- One call records the complete sale: document, items, SALE ledger entries,
  optional CHARGE on the customer's credit account and optional
  SALE_CASH_IN on the active drawer, all in one transaction
- Stock is taken first-expired-first-out across the location's pools;
  expired pools are skipped for expiration-tracking products
- The whole sale is rejected when any product is short; no partial stock
  decrement is ever committed
- Prices are integer cents; tax is computed per line in basis points with
  half-up rounding
"""

from __future__ import annotations

import logging
from collections import defaultdict

from ..extensions import db
from ..models import Sale, SaleItem
from ..validation import ConflictError, InsufficientStockError, SaleRequest, ValidationError
from . import ledger_service
from .audit_service import AuditEvent, emit_audit
from .concurrency import begin_write, run_in_transaction
from .document_service import next_document_number
from .drawer_service import find_active_drawer
from .projection_service import (
    available_quantity,
    plan_fefo_allocation,
    record_credit_movement,
    record_drawer_movement,
    record_stock_movement,
)
from .tenant_service import require_customer_in_org, require_location_in_org, require_product_in_org

logger = logging.getLogger(__name__)


SALE_STATUS_COMPLETED = "COMPLETED"
SALE_STATUS_REFUNDED = "REFUNDED"


def compute_tax_cents(net_cents: int, tax_rate_bps: int) -> int:
    """Tax on a line, rounded half-up to the cent."""
    if tax_rate_bps <= 0 or net_cents <= 0:
        return 0
    return (net_cents * tax_rate_bps + 5000) // 10000


def _price_lines(request: SaleRequest, products: dict) -> list[dict]:
    priced = []
    for line in request.lines:
        product = products[line.product_id]
        unit_price = line.unit_price_cents if line.unit_price_cents is not None else product.price_cents
        gross = unit_price * line.quantity
        if line.discount_cents > gross:
            raise ValidationError(
                "discount_cents cannot exceed the line amount",
                details={"product_id": product.id},
            )
        net = gross - line.discount_cents
        tax = compute_tax_cents(net, product.tax_rate_bps)
        priced.append({
            "product": product,
            "quantity": line.quantity,
            "unit_price_cents": unit_price,
            "gross_cents": gross,
            "discount_cents": line.discount_cents,
            "tax_cents": tax,
            "line_total_cents": net + tax,
        })
    return priced


def _settle(request: SaleRequest, total_cents: int, customer) -> tuple[int, int, int]:
    """Return (amount_applied, change_given, credit) for the sale."""
    if request.payment_method == "CREDIT":
        if customer is None:
            raise ValidationError("Credit sales require a customer")
        tendered = request.amount_paid_cents or 0
    else:
        tendered = total_cents if request.amount_paid_cents is None else request.amount_paid_cents

    change = 0
    if tendered > total_cents:
        if request.payment_method != "CASH":
            raise ValidationError("amount_paid_cents exceeds the sale total")
        change = tendered - total_cents
    applied = tendered - change
    credit = total_cents - applied

    if credit > 0:
        if customer is None:
            raise ValidationError(
                "amount_paid_cents is less than the sale total and no customer is attached",
                details={"total_cents": total_cents, "amount_paid_cents": tendered},
            )
        if not customer.is_active or customer.credit_status == "BLOCKED":
            raise ConflictError(
                "Customer is blocked from credit purchases",
                details={"customer_id": customer.id},
            )
    return applied, change, credit


def _check_availability(priced: list[dict], location_id: int) -> None:
    needed = defaultdict(int)
    products = {}
    for line in priced:
        needed[line["product"].id] += line["quantity"]
        products[line["product"].id] = line["product"]

    shortfalls = []
    for product_id, quantity in needed.items():
        available = available_quantity(product=products[product_id], location_id=location_id)
        if available < quantity:
            shortfalls.append({
                "product_id": product_id,
                "location_id": location_id,
                "requested": quantity,
                "available": available,
            })
    if shortfalls:
        raise InsufficientStockError("Insufficient stock", details={"lines": shortfalls})


def record_sale(
    *,
    org_id: int,
    user_id: int,
    request: SaleRequest,
    ip_address: str | None = None,
) -> Sale:
    """
    Record a completed sale.

    Raises:
        NotFoundError: location, product or customer missing or in another org
        ValidationError: discount/tender problems, credit without a customer
        InsufficientStockError: any product short at the location
        ConflictError: customer blocked from credit, or a concurrent writer won
    """
    def _op() -> Sale:
        begin_write()
        location = require_location_in_org(request.location_id, org_id)
        customer = None
        if request.customer_id is not None:
            customer = require_customer_in_org(request.customer_id, org_id, lock=True)

        products = {
            line.product_id: require_product_in_org(line.product_id, org_id, require_active=True)
            for line in request.lines
        }
        priced = _price_lines(request, products)
        _check_availability(priced, location.id)

        total = sum(line["line_total_cents"] for line in priced)
        applied, change, credit = _settle(request, total, customer)

        sale = Sale(
            org_id=org_id,
            location_id=location.id,
            customer_id=customer.id if customer else None,
            user_id=user_id,
            document_number=next_document_number(org_id=org_id, document_type="SALE"),
            status=SALE_STATUS_COMPLETED,
            payment_method=request.payment_method,
            subtotal_cents=sum(line["gross_cents"] for line in priced),
            discount_cents=sum(line["discount_cents"] for line in priced),
            tax_cents=sum(line["tax_cents"] for line in priced),
            total_cents=total,
            amount_paid_cents=applied,
            change_given_cents=change,
            credit_cents=credit,
            notes=request.notes,
        )
        db.session.add(sale)
        db.session.flush()

        for line in priced:
            product = line["product"]
            item = SaleItem(
                sale_id=sale.id,
                product_id=product.id,
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
                discount_cents=line["discount_cents"],
                tax_cents=line["tax_cents"],
                line_total_cents=line["line_total_cents"],
            )
            db.session.add(item)
            db.session.flush()

            plan = plan_fefo_allocation(product=product, location_id=location.id, quantity=line["quantity"])
            for level, take in plan:
                record_stock_movement(
                    org_id=org_id,
                    product_id=product.id,
                    location_id=location.id,
                    expiration_date=level.expiration_date,
                    delta=-take,
                    reason=ledger_service.STOCK_REASON_SALE,
                    ref_table="sales",
                    ref_id=sale.id,
                    user_id=user_id,
                    note=f"{sale.document_number} item {item.id}",
                )

        if credit > 0:
            record_credit_movement(
                customer=customer,
                type=ledger_service.CREDIT_CHARGE,
                amount_cents=credit,
                user_id=user_id,
                payment_method="CREDIT",
                ref_table="sales",
                ref_id=sale.id,
                notes=f"Credit sale {sale.document_number}",
            )

        if request.payment_method == "CASH" and applied > 0:
            drawer = find_active_drawer(org_id=org_id, user_id=user_id, location_id=location.id)
            if drawer is not None:
                record_drawer_movement(
                    drawer=drawer,
                    type=ledger_service.CASH_SALE_IN,
                    amount_cents=applied,
                    user_id=user_id,
                    reference_type="Sale",
                    reference_id=sale.id,
                    description=f"Sale {sale.document_number}",
                )
        return sale

    sale = run_in_transaction(_op)
    logger.info("Recorded sale %s for org %s by user %s", sale.document_number, org_id, user_id)
    emit_audit(AuditEvent(
        user_id=user_id,
        org_id=org_id,
        action="SALE_CREATED",
        entity_type="Sale",
        entity_id=sale.id,
        changes={
            "document_number": sale.document_number,
            "total_cents": sale.total_cents,
            "credit_cents": sale.credit_cents,
        },
        ip_address=ip_address,
    ))
    return sale
