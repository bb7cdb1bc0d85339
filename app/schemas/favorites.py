from pydantic import BaseModel


class FavoritesResponse(BaseModel):
    favorite_item_ids: list[str]
    remaining_removals: int
