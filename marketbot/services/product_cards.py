"""Product card text shared by moderation, the channel post and browsing."""

from marketbot.core.config import settings
from marketbot.services.entities import Product, User
from marketbot.services.messaging.composer import MessageComposer


def format_price(price: int) -> str:
    return f"{price:,} {settings.currency}"


def product_card(composer: MessageComposer, product: Product, seller: User | None = None, key: str = "product_card") -> str:
    return composer.render(
        key,
        id=product.id,
        title=product.title,
        price=format_price(product.price),
        category=product.category,
        description=product.description,
        status=product.status,
        seller=seller.display_name if seller else str(product.seller_id),
        seller_id=product.seller_id,
    )
