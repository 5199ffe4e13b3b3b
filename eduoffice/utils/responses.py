from flask import jsonify


def ok(data=None, status=200, **extra):
    body = {"success": True, "data": data}
    body.update(extra)
    return jsonify(body), status


def ok_page(page):
    return ok(page["items"], pagination=page["pagination"])


def int_arg(args, name):
    raw = (args.get(name) or "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None
