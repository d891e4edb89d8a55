from cravecrafted.common.logging_setup import get_logger

logger = get_logger("cravecrafted.orders")

GATEWAY_PROVIDER = "stripe"

# statuses an order can no longer leave through the admin status endpoint
TERMINAL_STATUSES = ("Delivered", "Cancelled", "Refunded")
# once the courier has the parcel the order can not be cancelled or deleted
COURIER_STATUSES = ("Shipped", "Out_for_Delivery", "Delivered")
DELETABLE_STATUSES = ("Cancelled", "Payment_Failed", "Refunded")
REFUNDABLE_STATUSES = ("Returned", "Payment_Confirmed", "Cancelled")

# gateway payment intent statuses that still hold an authorisation which can be released
RELEASABLE_INTENT_STATUSES = (
    "requires_payment_method", "requires_confirmation", "requires_action",
    "processing", "requires_capture",
)

RECURRENCE_INTERVALS = {
    "weekly": ("week", 1),
    "biweekly": ("week", 2),
    "monthly": ("month", 1),
    "quarterly": ("month", 3),
}

DECLINE_MESSAGES = {
    "insufficient_funds": "Your card has insufficient funds.",
    "lost_card": "Your card has been reported lost.",
    "stolen_card": "Your card has been reported stolen.",
    "expired_card": "Your card has expired.",
    "incorrect_cvc": "Your card's security code is incorrect.",
    "processing_error": "An error occurred while processing your card. Try again in a little bit.",
    "generic_decline": "Your card was declined.",
}

# gateway test card numbers -> test payment method tokens
TEST_CARD_TOKENS = {
    "4242424242424242": "pm_card_visa",
    "4000056655665556": "pm_card_visa_debit",
    "5555555555554444": "pm_card_mastercard",
    "378282246310005": "pm_card_amex",
    "4000000000000002": "pm_card_chargeDeclined",
    "4000000000009995": "pm_card_chargeDeclinedInsufficientFunds",
    "4000000000009987": "pm_card_chargeDeclinedLostCard",
    "4000000000009979": "pm_card_chargeDeclinedStolenCard",
    "4000000000000069": "pm_card_chargeDeclinedExpiredCard",
    "4000000000000127": "pm_card_chargeDeclinedIncorrectCvc",
    "4000000000000119": "pm_card_chargeDeclinedProcessingError",
    "4000002500003155": "pm_card_authenticationRequired",
}
DEFAULT_TEST_TOKEN = "pm_card_visa"
