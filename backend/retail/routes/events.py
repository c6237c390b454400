# Overview: Server-Sent Events stream of realtime order, inventory and return events.

from flask import Blueprint, Response, current_app, g, request, stream_with_context

from ..decorators import require_auth
from ..extensions import broadcaster, db
from ..services import event_service

events_bp = Blueprint("events", __name__, url_prefix="/api/events")


@events_bp.get("/stream")
@require_auth
def stream_route():
    """
    Subscribe to the rooms the caller belongs to.

    ?pos=1 joins the POS room (staff only). Sends a comment line every
    EVENT_STREAM_HEARTBEAT_SECONDS while idle; unsubscribes when the
    client goes away.
    """
    is_pos = request.args.get("pos", "").lower() in ("1", "true", "yes")
    rooms = event_service.rooms_for_user(g.current_user, is_pos=is_pos)
    heartbeat = float(current_app.config.get("EVENT_STREAM_HEARTBEAT_SECONDS", 15))

    # Release the pooled connection; the stream does not touch the database
    db.session.commit()

    subscription = broadcaster.subscribe(rooms)

    def generate():
        try:
            yield f"retry: 5000\n: subscribed {','.join(sorted(subscription.rooms))}\n\n"
            while True:
                message = subscription.get(timeout=heartbeat)
                if message is None:
                    yield ": keep-alive\n\n"
                    continue
                yield event_service.format_sse(message)
        finally:
            broadcaster.unsubscribe(subscription)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
