from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.order_tracking import OrderTracking
from app.models.payment import PaymentTransaction
from app.models.notifications import Notification

# add ALL models here
