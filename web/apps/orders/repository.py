"""Django ORM implementation of the ``DataStore`` port.

This module maps the ORM models in ``models`` to the domain dataclasses
and back, so the domain layer is not coupled to Django ORM details.

Conditional writes are single ``UPDATE ... WHERE <expected value>``
statements (``QuerySet.filter(...).update(...)``); the affected row count
tells the caller whether it won. Nothing here reads a row and then writes
it back unconditionally.
"""

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .domain import (
    Item,
    MerchantAccountStatus,
    Order,
    OrderLine,
    OrderStatus,
    Reservation,
    ReservationState,
    Shop,
    StatusChange,
    StockKind,
    StockPolicy,
)
from .models import (
    ItemModel,
    OrderLineModel,
    OrderModel,
    OrderStatusChangeModel,
    ReservationModel,
    ShopModel,
)


# ---- mapping ----

def shop_from_model(obj: ShopModel) -> Shop:
    return Shop(
        id=str(obj.id),
        owner_id=obj.owner_id,
        name=obj.name,
        address=obj.address,
        is_open=obj.is_open,
        merchant_account=obj.merchant_account,
        charges_enabled=obj.charges_enabled,
        payouts_enabled=obj.payouts_enabled,
        details_submitted=obj.details_submitted,
    )


def item_from_model(obj: ItemModel) -> Item:
    return Item(
        id=str(obj.id),
        shop_id=str(obj.shop_id),
        name=obj.name,
        description=obj.description,
        price=obj.price,
        stock=StockPolicy(StockKind(obj.stock_policy), obj.stock_count),
        reserved=obj.reserved,
        version=obj.version,
        deleted=obj.deleted,
    )


def reservation_from_model(obj: ReservationModel) -> Reservation:
    return Reservation(
        id=str(obj.id),
        item_id=str(obj.item_id),
        order_id=str(obj.order_id),
        quantity=obj.quantity,
        created_at=obj.created_at,
        expires_at=obj.expires_at,
        state=ReservationState(obj.state),
        tracked=obj.tracked,
    )


def order_from_model(obj: OrderModel) -> Order:
    return Order(
        id=str(obj.id),
        shop_id=str(obj.shop_id),
        customer_id=obj.customer_id,
        lines=[
            OrderLine(item_id=str(line.item_id), name=line.name, unit_price=line.unit_price, quantity=line.quantity)
            for line in obj.lines.all()
        ],
        subtotal=obj.subtotal,
        tax=obj.tax,
        total=obj.total,
        currency=obj.currency,
        amount_minor=obj.amount_minor,
        application_fee_minor=obj.application_fee_minor,
        payment_ref=obj.payment_ref,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
        expires_at=obj.expires_at,
        pickup_time=obj.pickup_time,
        status=OrderStatus(obj.status),
        placed_at=obj.placed_at,
        cancel_reason=obj.cancel_reason,
    )


class DjangoDataStore:
    """``DataStore`` backed by the default Django database."""

    def atomic(self):
        return transaction.atomic()

    # shops
    def get_shop(self, shop_id):
        obj = ShopModel.objects.filter(id=shop_id).first()
        return shop_from_model(obj) if obj else None

    def find_shop_by_merchant_account(self, account_ref):
        obj = ShopModel.objects.filter(merchant_account=account_ref).first()
        return shop_from_model(obj) if obj else None

    def save_merchant_status(self, shop_id, status: MerchantAccountStatus):
        ShopModel.objects.filter(id=shop_id).update(
            merchant_account=status.account_ref,
            charges_enabled=status.charges_enabled,
            payouts_enabled=status.payouts_enabled,
            details_submitted=status.details_submitted,
            updated_at=timezone.now(),
        )
        return self.get_shop(shop_id)

    # items
    def get_item(self, item_id):
        obj = ItemModel.objects.filter(id=item_id).first()
        return item_from_model(obj) if obj else None

    def update_item_stock(self, item_id, expected_version, stock_count, reserved):
        rows = ItemModel.objects.filter(id=item_id, version=expected_version).update(
            stock_count=stock_count,
            reserved=reserved,
            version=F("version") + 1,
            updated_at=timezone.now(),
        )
        return rows == 1

    # reservations
    def add_reservation(self, reservation: Reservation):
        ReservationModel.objects.create(
            id=reservation.id,
            item_id=reservation.item_id,
            order_id=reservation.order_id,
            quantity=reservation.quantity,
            state=reservation.state.value,
            tracked=reservation.tracked,
            created_at=reservation.created_at,
            expires_at=reservation.expires_at,
        )

    def get_reservation(self, reservation_id):
        obj = ReservationModel.objects.filter(id=reservation_id).first()
        return reservation_from_model(obj) if obj else None

    def update_reservation_state(self, reservation_id, expected, new):
        rows = ReservationModel.objects.filter(id=reservation_id, state=expected.value).update(state=new.value)
        return rows == 1

    def reservations_for_order(self, order_id):
        qs = ReservationModel.objects.filter(order_id=order_id).order_by("created_at")
        return [reservation_from_model(obj) for obj in qs]

    def expired_reservations(self, now):
        qs = ReservationModel.objects.filter(
            state=ReservationModel.State.HELD, expires_at__lte=now
        ).order_by("expires_at")
        return [reservation_from_model(obj) for obj in qs]

    # orders
    def add_order(self, order: Order):
        with transaction.atomic():
            obj = OrderModel(
                id=order.id,
                shop_id=order.shop_id,
                customer_id=order.customer_id,
                status=order.status.value,
                pickup_time=order.pickup_time,
                subtotal=order.subtotal,
                tax=order.tax,
                total=order.total,
                currency=order.currency,
                amount_minor=order.amount_minor,
                application_fee_minor=order.application_fee_minor,
                payment_ref=order.payment_ref,
                expires_at=order.expires_at,
                placed_at=order.placed_at,
                cancel_reason=order.cancel_reason,
                created_at=order.created_at,
                updated_at=order.updated_at,
            )
            obj.save()
            OrderLineModel.objects.bulk_create(
                OrderLineModel(
                    order=obj,
                    position=pos,
                    item_id=line.item_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                )
                for pos, line in enumerate(order.lines)
            )

    def _orders(self):
        return OrderModel.objects.prefetch_related("lines")

    def get_order(self, order_id):
        obj = self._orders().filter(id=order_id).first()
        return order_from_model(obj) if obj else None

    def get_order_by_payment_ref(self, payment_ref):
        obj = self._orders().filter(payment_ref=payment_ref).first()
        return order_from_model(obj) if obj else None

    def update_order_status(self, order_id, expected, new, at, placed_at=None, cancel_reason=None):
        changes = {"status": new.value, "updated_at": at}
        if placed_at is not None:
            changes["placed_at"] = placed_at
        if cancel_reason is not None:
            changes["cancel_reason"] = cancel_reason
        rows = OrderModel.objects.filter(id=order_id, status=expected.value).update(**changes)
        return rows == 1

    def add_status_change(self, change: StatusChange):
        OrderStatusChangeModel.objects.create(
            order_id=change.order_id,
            from_status=change.from_status.value,
            to_status=change.to_status.value,
            actor_id=change.actor_id,
            note=change.note,
            created_at=change.created_at,
        )

    def list_orders(self, shop_id=None, customer_id=None, statuses=None):
        qs = self._orders().filter(placed_at__isnull=False)
        if shop_id is not None:
            qs = qs.filter(shop_id=shop_id)
        if customer_id is not None:
            qs = qs.filter(customer_id=customer_id)
        if statuses is not None:
            qs = qs.filter(status__in=[OrderStatus(s).value for s in statuses])
        return [order_from_model(obj) for obj in qs.order_by("-created_at")]

    def stale_orders(self, now):
        qs = self._orders().filter(status=OrderModel.Status.PENDING_PAYMENT, expires_at__lte=now)
        return [order_from_model(obj) for obj in qs]
