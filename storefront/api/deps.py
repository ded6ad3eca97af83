from storefront.db.session import SessionLocal
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.invoice import generate_invoice
from storefront.services.notifications import get_notifier
from storefront.services.payment_gateway import get_payment_gateway
from storefront.services.shipment import get_carrier

def get_db():
    db = SessionLocal()
    try: yield db
    finally: db.close()

def get_orchestrator() -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        gateway=get_payment_gateway(),
        carrier=get_carrier(),
        invoice_renderer=generate_invoice,
        notifier=get_notifier(),
    )
