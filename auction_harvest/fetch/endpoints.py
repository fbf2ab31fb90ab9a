"""URL builders for the auction API."""
from auction_harvest.config import config
from auction_harvest.models import Identifier


def get_auctions_url(base: str = None) -> str:
    """Date-filtered auction search endpoint."""
    return f"{base or config.API_BASE_URL}/auctions"


def get_auction_items_url(auction_id: Identifier, base: str = None) -> str:
    """Paginated lot listing for one auction."""
    return f"{base or config.API_BASE_URL}/auctions/{auction_id}/items"


def get_lot_images_url(auction_id: Identifier, lot_id: Identifier, base: str = None) -> str:
    """Image sub-resource for one lot."""
    return f"{base or config.API_BASE_URL}/auctions/{auction_id}/items/{lot_id}/images"
