"""
Inline button callback data.

Telegram limits callback_data to 64 bytes, so payloads carry ids and short
tokens only (never user-supplied text).
"""

SEP = ":"

# Listing wizard
CB_CATEGORY = "cat"  # cat:<index>
CB_CANCEL_LISTING = "cancel_listing"

# Moderation
CB_APPROVE = "approve"  # approve:<product_id>
CB_REJECT = "reject"  # reject:<product_id>

# Chat relay
CB_CONTACT_SELLER = "contact"  # contact:<product_id>
CB_END_CHAT = "end_chat"

# Storefront
CB_MAIN_MENU = "main_menu"
CB_BROWSE = "browse"
CB_SELL = "sell"
CB_MY_PRODUCTS = "my_products"
CB_CONTACT_ADMIN = "contact_admin"  # contact_admin or contact_admin:<topic>
CB_REPORT_PRODUCT = "report"  # report:<product_id>
CB_HELP = "help"

# Admin navigator
CB_ADMIN_NAV = "adm"  # adm:nav:<panel> | adm:back | adm:home | adm:page:<panel>:<page>
CB_ADMIN_USER = "usr"  # usr:<action>:<user_id>
CB_ADMIN_SETTING = "set"  # set:<key>
CB_BROADCAST = "bc"  # bc:scope:<scope> | bc:confirm:<token> | bc:cancel:<token> | bc:stop:<token>


def build(*parts) -> str:
    """Join callback parts with the separator."""
    return SEP.join(str(p) for p in parts)


def split(data: str) -> list[str]:
    """Split callback data into its parts."""
    return (data or "").split(SEP)
