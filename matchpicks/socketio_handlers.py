"""
SocketIO Event Handlers for Real-time Updates

Clients connect to the /scores namespace and subscribe to a match or a
group. When a match has been scored, subscribers of the match room get the
scoring result and subscribers of each affected group room get the fresh
leaderboard.
"""

import logging

from flask import request
from flask_socketio import emit, join_room, leave_room

from matchpicks import db, socketio
from matchpicks.models import Group, Match

logger = logging.getLogger(__name__)

NAMESPACE = "/scores"

# Track connected clients and their subscriptions
connected_clients = {}


def match_room(match_id):
    return f"match_{match_id}"


def group_room(group_id):
    return f"group_{group_id}"


@socketio.on("connect", namespace=NAMESPACE)
def on_connect(auth=None):
    """Handle client connection to scores namespace"""
    client_id = request.sid
    connected_clients[client_id] = {"subscriptions": set()}
    logger.info(f"Client connected to {NAMESPACE}: {client_id}")


@socketio.on("disconnect", namespace=NAMESPACE)
def on_disconnect(*args):
    """Handle client disconnection from scores namespace"""
    client_id = request.sid
    if connected_clients.pop(client_id, None) is not None:
        logger.info(f"Client disconnected from {NAMESPACE}: {client_id}")


def _subscribe(room_name):
    client = connected_clients.setdefault(request.sid, {"subscriptions": set()})

    # Skip if already subscribed (avoid duplicate joins/emits)
    if room_name in client["subscriptions"]:
        return False

    client["subscriptions"].add(room_name)
    join_room(room_name)
    return True


def _unsubscribe(room_name):
    client = connected_clients.get(request.sid)
    if client is not None:
        client["subscriptions"].discard(room_name)
    leave_room(room_name)


@socketio.on("subscribe_match", namespace=NAMESPACE)
def on_subscribe_match(data):
    """Subscribe to updates for a specific match"""
    match_id = (data or {}).get("match_id")
    if not match_id:
        emit("subscription_error", {"message": "match_id is required"})
        return

    if not _subscribe(match_room(match_id)):
        return

    # Send current match state
    match = db.session.get(Match, match_id)
    if match:
        emit("match_update", match.to_dict())

    logger.debug(f"Client {request.sid} subscribed to match {match_id}")


@socketio.on("unsubscribe_match", namespace=NAMESPACE)
def on_unsubscribe_match(data):
    match_id = (data or {}).get("match_id")
    if match_id:
        _unsubscribe(match_room(match_id))
        logger.debug(f"Client {request.sid} unsubscribed from match {match_id}")


@socketio.on("subscribe_group", namespace=NAMESPACE)
def on_subscribe_group(data):
    """Subscribe to leaderboard updates for a group"""
    group_id = (data or {}).get("group_id")
    if not group_id:
        emit("subscription_error", {"message": "group_id is required"})
        return

    if not _subscribe(group_room(group_id)):
        return

    group = db.session.get(Group, group_id)
    if group:
        emit("rankings_updated", _rankings_payload(group))

    logger.debug(f"Client {request.sid} subscribed to group {group_id}")


@socketio.on("unsubscribe_group", namespace=NAMESPACE)
def on_unsubscribe_group(data):
    group_id = (data or {}).get("group_id")
    if group_id:
        _unsubscribe(group_room(group_id))
        logger.debug(f"Client {request.sid} unsubscribed from group {group_id}")


def _rankings_payload(group):
    return {
        "group_id": group.id,
        "rankings": [ranking.to_dict() for ranking in group.get_rankings()],
    }


# Broadcast functions (called once scoring has committed)
def broadcast_match_scored(result):
    """Broadcast a scoring result to match subscribers and new rankings to groups"""
    try:
        socketio.emit(
            "match_scored",
            result.to_dict(),
            room=match_room(result.match_id),
            namespace=NAMESPACE,
        )

        for group_id in result.groups_updated:
            group = db.session.get(Group, group_id)
            if group is None:
                continue
            socketio.emit(
                "rankings_updated",
                _rankings_payload(group),
                room=group_room(group_id),
                namespace=NAMESPACE,
            )

        logger.info(
            f"Broadcasted match scored for match {result.match_id} "
            f"to {len(result.groups_updated)} groups"
        )

    except Exception as e:
        logger.error(f"Error broadcasting match scored: {e}")


def get_connection_stats():
    """Get connection statistics"""
    return {
        "total_connections": len(connected_clients),
        "total_subscriptions": sum(
            len(c["subscriptions"]) for c in connected_clients.values()
        ),
    }
