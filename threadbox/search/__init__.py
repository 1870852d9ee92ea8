"""Web search: engines, the active-engine manager, and message augmentation."""
from threadbox.search.augmenter import SEARCH_RESULT_KIND, SearchAugmenter
from threadbox.search.engines import SearchManager

__all__ = ["SEARCH_RESULT_KIND", "SearchAugmenter", "SearchManager"]
