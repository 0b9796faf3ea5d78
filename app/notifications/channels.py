from enum import Enum


class Channel(str, Enum):
    INAPP_CUSTOMER = "inapp_customer"
    INAPP_MERCHANT = "inapp_merchant"
