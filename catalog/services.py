from typing import Optional

from .models import Product


def catalog_product_type(product: Optional[Product]) -> Optional[str]:
    """
    Product type as recorded in the catalog.

    Precedence: the explicit ``product_type`` field, then a service inferred
    from ``service_options``, then the ``is_digital`` flag. Returns None when
    the listing carries no usable hint.
    """
    if product is None:
        return None
    if product.product_type in Product.ProductType.values:
        return product.product_type
    if product.service_options:
        return Product.ProductType.SERVICE
    if product.is_digital:
        return Product.ProductType.DIGITAL
    return None
