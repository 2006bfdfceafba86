"""Client upsert and the once-per-payment `total_spent` accumulator."""

from decimal import Decimal

from sqlalchemy import select, update

from studioflow.services.notification.whatsapp import normalize_phone
from studioflow.services.studio.models import Client


def upsert_client(db, tenant_id: str, name: str, phone: str, email: str | None = None) -> Client:
    """Find the tenant's client by normalized phone, creating or refreshing it.

    Two concurrent first bookings for one phone collide on the
    `(tenant_id, phone)` constraint at commit; the loser's caller retries.
    """

    key = normalize_phone(phone)
    client = db.execute(
        select(Client).where(Client.tenant_id == tenant_id, Client.phone == key)
    ).scalar_one_or_none()
    if client is None:
        client = Client(tenant_id=tenant_id, name=name, phone=key, email=email, total_spent=Decimal("0"))
        db.add(client)
        db.flush()
        return client
    if name:
        client.name = name
    if email:
        client.email = email
    return client


def credit_client(db, client_id: str | None, amount: Decimal) -> None:
    # Atomic increment; callers hold the payment's credit claim.
    if client_id is None:
        return
    db.execute(
        update(Client)
        .where(Client.id == client_id)
        .values(total_spent=Client.total_spent + amount)
    )
