"""Group-buy, lottery and points storefront service."""
