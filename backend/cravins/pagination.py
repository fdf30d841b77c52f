from __future__ import annotations
import math
from typing import Any, Dict


def page_info(page: int, limit: int, total: int) -> Dict[str, Any]:
	total_pages = math.ceil(total / limit) if limit else 0
	return {
		"current_page": page,
		"total_pages": total_pages,
		"total_items": total,
		"has_next": page < total_pages,
		"has_prev": page > 1,
		"limit": limit,
	}
