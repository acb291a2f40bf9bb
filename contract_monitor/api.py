from typing import Optional

from aiohttp import web

from .view import build_rows, paginate, totals


def resolve_cors_origin(allowed: set, request_origin: Optional[str]) -> Optional[str]:
    if not request_origin or not allowed:
        return None
    origin = str(request_origin).strip().rstrip("/")
    if not origin:
        return None
    if "*" in allowed:
        return "*"
    if origin in allowed:
        return origin
    return None


def create_api_app(monitor) -> web.Application:
    allowed = {str(x).strip().rstrip("/") for x in monitor.cfg.cors_allow_origins if str(x).strip()}

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        allow_origin = resolve_cors_origin(allowed, request.headers.get("Origin"))
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
        else:
            try:
                response = await handler(request)
            except web.HTTPException as ex:
                response = ex

        if allow_origin:
            response.headers["Access-Control-Allow-Origin"] = allow_origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Cache-Control"] = "no-store"
        return response

    async def health_handler(request: web.Request) -> web.Response:
        cursor = monitor.cursor
        return web.json_response(
            {
                "ok": monitor.last_error is None,
                "loading": monitor.is_loading,
                "lastError": monitor.last_error,
                "contract": monitor.contract,
                "lastFetchedBlock": cursor.last_fetched_block,
                "contractCreationBlock": cursor.contract_creation_block,
                "schemaVersion": cursor.schema_version,
                "filterFailedTxs": cursor.filter_failed_txs,
                "preferredEndpoint": monitor.rpc.current_index,
                "batchSize": monitor.scanner.batch_size,
                "deadLetters": monitor.storage.count_dead_letters(),
                "stats": dict(monitor.stats),
                **totals(monitor.snapshot()),
            }
        )

    async def addresses_handler(request: web.Request) -> web.Response:
        try:
            page = int(request.query.get("page", "1"))
            per_page = int(request.query.get("perPage", "25"))
        except ValueError:
            return web.json_response({"error": "page and perPage must be integers"}, status=400)
        per_page = max(1, min(per_page, 500))
        try:
            rows = build_rows(
                monitor.snapshot(),
                query=request.query.get("q", ""),
                sort_column=request.query.get("sort", "txCount"),
                sort_direction=request.query.get("dir", ""),
            )
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        items, pages = paginate(rows, page, per_page)
        return web.json_response(
            {"page": max(1, page), "pages": pages, "count": len(rows), "items": items}
        )

    async def refresh_handler(request: web.Request) -> web.Response:
        started = monitor.trigger_refresh()
        return web.json_response({"started": started}, status=202 if started else 409)

    async def reset_handler(request: web.Request) -> web.Response:
        if not monitor.reset():
            return web.json_response({"error": "refresh in progress"}, status=409)
        monitor.trigger_refresh()
        return web.json_response({"ok": True, "lastFetchedBlock": monitor.cursor.last_fetched_block})

    middlewares = [cors_middleware] if allowed else []
    app = web.Application(middlewares=middlewares)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/addresses", addresses_handler)
    app.router.add_post("/refresh", refresh_handler)
    app.router.add_post("/reset", reset_handler)
    return app
