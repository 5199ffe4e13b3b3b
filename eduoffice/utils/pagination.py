DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def page_args(args):
    try:
        page = max(int(args.get("page", 1)), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(args.get("limit", DEFAULT_PAGE_SIZE))
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    return page, min(max(limit, 1), MAX_PAGE_SIZE)


def paginate(query, page, limit, serializer):
    pagination = query.paginate(page=page, per_page=limit, error_out=False)
    return {
        "items": [serializer(row) for row in pagination.items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": pagination.total,
            "totalPages": pagination.pages,
        },
    }
