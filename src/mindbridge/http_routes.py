from __future__ import annotations

import asyncio
from typing import Any

from aiohttp import web

from .errors import InvalidRequest, NotFound, Unauthorized
from .models import Visibility
from .ws_transport import RUNTIME_KEY, Runtime


def _runtime(request: web.Request) -> Runtime:
    return request.app[RUNTIME_KEY]


def _actor(request: web.Request) -> str | None:
    return request.headers.get("X-User-Id") or None


def _require_actor(request: web.Request) -> str:
    actor_id = _actor(request)
    if actor_id is None:
        raise Unauthorized("X-User-Id header required")
    return actor_id


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("malformed json") from None
    if not isinstance(body, dict):
        raise InvalidRequest("json object required")
    return body


def _required_str(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{key} required")
    return value


def _optional_visibility(body: dict[str, Any]) -> Visibility | None:
    raw = body.get("visibility")
    return None if raw is None else Visibility.parse(raw)


# users


async def handle_user_create(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    profile = await asyncio.to_thread(
        runtime.profiles.create,
        _required_str(body, "username"),
        body.get("email") or "",
        bio=body.get("bio") or "",
        avatar=body.get("avatar"),
    )
    return web.json_response(profile.to_api_dict(), status=201)


async def handle_user_get(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = request.match_info["userId"]
    profile = await asyncio.to_thread(runtime.profiles.get, user_id)
    stats = await asyncio.to_thread(runtime.profiles.stats, user_id)
    return web.json_response({**profile.to_api_dict(), "stats": stats})


def _require_self(request: web.Request) -> str:
    user_id = request.match_info["userId"]
    if _require_actor(request) != user_id:
        raise Unauthorized("you can only change your own account")
    return user_id


async def handle_user_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = _require_self(request)
    body = await _read_json(request)
    profile = await asyncio.to_thread(runtime.profiles.update, user_id, body)
    stats = await asyncio.to_thread(runtime.profiles.stats, user_id)
    return web.json_response({**profile.to_api_dict(), "stats": stats})


async def handle_user_delete(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    await asyncio.to_thread(runtime.profiles.delete, _require_self(request))
    return web.json_response({"status": "ok"})


async def handle_user_entries(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    visible = await runtime.community.visible_entries(
        request.match_info["userId"], _actor(request), request.query.get("circleId")
    )
    return web.json_response(visible.to_api_dict())


# mood and journal entries

_ENTRY_FIELDS = {"content", "visibility"}


async def handle_entry_create(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    content = body.get("content")
    if not isinstance(content, str):
        raise InvalidRequest("content required")
    entry = await runtime.community.create_entry(
        _actor(request),
        request.match_info["kind"],
        content,
        visibility=_optional_visibility(body) or Visibility.PRIVATE,
        attributes={k: v for k, v in body.items() if k not in _ENTRY_FIELDS},
    )
    return web.json_response(entry.to_api_dict(), status=201)


async def handle_entry_list(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    kind = request.match_info["kind"]
    entries = await runtime.community.list_entries(
        request.match_info["ownerId"], kind, _actor(request), request.query.get("circleId")
    )
    return web.json_response({"entries": [entry.to_api_dict() for entry in entries]})


async def _entry_of_kind(request: web.Request):
    entry = await _runtime(request).community.get_entry(request.match_info["entryId"], _actor(request))
    if entry.kind != request.match_info["kind"]:
        raise NotFound("entry not found")
    return entry


async def handle_entry_get(request: web.Request) -> web.Response:
    entry = await _entry_of_kind(request)
    return web.json_response(entry.to_api_dict())


async def handle_entry_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    entry = await _entry_of_kind(request)
    attributes = {k: v for k, v in body.items() if k not in _ENTRY_FIELDS}
    updated = await runtime.community.update_entry(
        _actor(request),
        entry.entry_id,
        content=body.get("content"),
        visibility=_optional_visibility(body),
        attributes=attributes or None,
    )
    return web.json_response(updated.to_api_dict())


async def handle_entry_delete(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    entry = await _entry_of_kind(request)
    await runtime.community.delete_entry(_actor(request), entry.entry_id)
    return web.json_response({"status": "ok"})


# circles


async def handle_circle_create(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = _require_actor(request)
    body = await _read_json(request)
    tags = body.get("tags") or []
    if not isinstance(tags, list) or any(not isinstance(tag, str) for tag in tags):
        raise InvalidRequest("tags must be a list of strings")
    circle = await asyncio.to_thread(
        runtime.circles.create,
        _required_str(body, "name"),
        body.get("description") or "",
        actor_id,
        tags=tags,
        visibility=body.get("visibility") or "public",
        allows_anonymous=bool(body.get("allowsAnonymous", False)),
        cover_image=body.get("coverImage") or "",
    )
    return web.json_response(circle.to_api_dict(), status=201)


async def handle_circle_list(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    circles = await asyncio.to_thread(
        runtime.circles.list, search=request.query.get("search"), tag=request.query.get("tag")
    )
    return web.json_response({"circles": [circle.to_api_dict() for circle in circles]})


async def handle_circle_get(request: web.Request) -> web.Response:
    circle = await asyncio.to_thread(_runtime(request).circles.get, request.match_info["circleId"])
    return web.json_response(circle.to_api_dict())


async def handle_circle_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = _require_actor(request)
    body = await _read_json(request)
    circle = await asyncio.to_thread(runtime.circles.update, request.match_info["circleId"], actor_id, body)
    return web.json_response(circle.to_api_dict())


async def handle_circle_join(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    outcome = await asyncio.to_thread(
        runtime.circles.join, request.match_info["circleId"], _require_actor(request)
    )
    return web.json_response({"status": outcome})


async def handle_circle_leave(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    await asyncio.to_thread(runtime.circles.leave, request.match_info["circleId"], _require_actor(request))
    return web.json_response({"status": "ok"})


async def handle_circle_request(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    actor_id = _require_actor(request)
    body = await _read_json(request)
    approve = body.get("approve")
    if not isinstance(approve, bool):
        raise InvalidRequest("approve must be a boolean")
    await asyncio.to_thread(
        runtime.circles.decide_request,
        request.match_info["circleId"],
        actor_id,
        request.match_info["userId"],
        approve,
    )
    return web.json_response({"status": "approved" if approve else "rejected"})


async def handle_circle_kick(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    await asyncio.to_thread(
        runtime.circles.kick, request.match_info["circleId"], _require_actor(request), request.match_info["userId"]
    )
    return web.json_response({"status": "ok"})


async def handle_circle_promote(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    await asyncio.to_thread(
        runtime.circles.promote,
        request.match_info["circleId"],
        _require_actor(request),
        request.match_info["userId"],
    )
    return web.json_response({"status": "ok"})


# posts


async def handle_post_create(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    post, report = await runtime.community.create_post(
        _actor(request),
        _required_str(body, "circleId"),
        _required_str(body, "content"),
        is_anonymous=bool(body.get("isAnonymous", False)),
    )
    return web.json_response({**post.to_api_dict(), "notified": len(report.persisted)}, status=201)


async def handle_post_list(request: web.Request) -> web.Response:
    posts = await _runtime(request).community.list_posts(request.match_info["circleId"])
    return web.json_response({"posts": [post.to_api_dict() for post in posts]})


async def handle_post_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    post = await runtime.community.edit_post(
        _actor(request), request.match_info["postId"], _required_str(body, "content")
    )
    return web.json_response(post.to_api_dict())


async def handle_post_delete(request: web.Request) -> web.Response:
    await _runtime(request).community.delete_post(_actor(request), request.match_info["postId"])
    return web.json_response({"status": "ok"})


async def handle_post_like(request: web.Request) -> web.Response:
    liked = await _runtime(request).community.toggle_like(_actor(request), request.match_info["postId"])
    return web.json_response({"liked": liked})


async def handle_post_comment(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    comment = await runtime.community.comment(
        _actor(request), request.match_info["postId"], _required_str(body, "text")
    )
    return web.json_response(comment.to_api_dict(), status=201)


async def handle_post_report(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    await runtime.community.report_post(_actor(request), request.match_info["postId"], body.get("reason") or "")
    return web.json_response({"status": "ok"})


async def handle_post_dismiss_reports(request: web.Request) -> web.Response:
    await _runtime(request).community.dismiss_reports(_actor(request), request.match_info["postId"])
    return web.json_response({"status": "ok"})


# questions


async def handle_question_create(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    question, report = await runtime.community.ask(
        _actor(request),
        _required_str(body, "circleId"),
        _required_str(body, "title"),
        body.get("body") or "",
    )
    return web.json_response({**question.to_api_dict(), "notified": len(report.persisted)}, status=201)


async def handle_question_list(request: web.Request) -> web.Response:
    questions = await _runtime(request).community.list_questions(request.match_info["circleId"])
    return web.json_response({"questions": [question.to_api_dict() for question in questions]})


async def handle_question_update(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    question = await runtime.community.edit_question(
        _actor(request), request.match_info["questionId"], title=body.get("title"), body=body.get("body")
    )
    return web.json_response(question.to_api_dict())


async def handle_question_delete(request: web.Request) -> web.Response:
    await _runtime(request).community.delete_question(_actor(request), request.match_info["questionId"])
    return web.json_response({"status": "ok"})


async def handle_question_upvote(request: web.Request) -> web.Response:
    upvoted = await _runtime(request).community.toggle_question_upvote(
        _actor(request), request.match_info["questionId"]
    )
    return web.json_response({"upvoted": upvoted})


async def handle_answer_create(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    answer = await runtime.community.answer(
        _actor(request), request.match_info["questionId"], _required_str(body, "text")
    )
    return web.json_response(answer.to_api_dict(), status=201)


async def handle_answer_delete(request: web.Request) -> web.Response:
    question = await _runtime(request).community.delete_answer(
        _actor(request), request.match_info["questionId"], request.match_info["answerId"]
    )
    return web.json_response(question.to_api_dict())


async def handle_answer_upvote(request: web.Request) -> web.Response:
    upvoted = await _runtime(request).community.toggle_answer_upvote(
        _actor(request), request.match_info["questionId"], request.match_info["answerId"]
    )
    return web.json_response({"upvoted": upvoted})


# messages


async def handle_message_send(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    message, delivered = await runtime.community.send_message(
        _actor(request), body.get("receiverId"), body.get("text")
    )
    return web.json_response({"message": message.to_api_dict(), "delivered": delivered}, status=201)


async def handle_message_history(request: web.Request) -> web.Response:
    messages = await _runtime(request).conversations.history(
        request.match_info["userId"], request.match_info["otherId"]
    )
    return web.json_response({"messages": [message.to_api_dict() for message in messages]})


async def handle_conversation_list(request: web.Request) -> web.Response:
    summaries = await _runtime(request).conversations.list_conversations(request.match_info["userId"])
    return web.json_response({"conversations": [summary.to_api_dict() for summary in summaries]})


async def handle_conversation_read(request: web.Request) -> web.Response:
    updated = await _runtime(request).conversations.mark_read(
        request.match_info["userId"], request.match_info["partnerId"]
    )
    return web.json_response({"updated": updated})


# notifications


async def handle_notification_send(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    body = await _read_json(request)
    notification = await runtime.community.send_notification(
        _actor(request), body.get("receiverId"), body.get("type"), body.get("message") or ""
    )
    return web.json_response(notification.to_api_dict(), status=201)


async def handle_notification_list(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    user_id = request.match_info["userId"]
    notifications = await asyncio.to_thread(runtime.notifications.list_for, user_id)
    unread = await asyncio.to_thread(runtime.notifications.unread_count, user_id)
    return web.json_response(
        {"notifications": [n.to_api_dict() for n in notifications], "unreadCount": unread}
    )


async def handle_notification_mark_read(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    await asyncio.to_thread(runtime.notifications.mark_read, request.match_info["notificationId"])
    return web.json_response({"status": "ok"})


async def handle_notification_read_all(request: web.Request) -> web.Response:
    runtime = _runtime(request)
    updated = await asyncio.to_thread(runtime.notifications.mark_all_read, request.match_info["userId"])
    return web.json_response({"updated": updated})


def register_routes(app: web.Application) -> None:
    router = app.router

    router.add_post("/api/users", handle_user_create)
    router.add_get("/api/users/{userId}", handle_user_get)
    router.add_put("/api/users/{userId}", handle_user_update)
    router.add_delete("/api/users/{userId}", handle_user_delete)
    router.add_get("/api/users/{userId}/entries", handle_user_entries)

    router.add_post("/api/{kind:mood|journal}", handle_entry_create)
    router.add_get("/api/{kind:mood|journal}/user/{ownerId}", handle_entry_list)
    router.add_get("/api/{kind:mood|journal}/{entryId}", handle_entry_get)
    router.add_put("/api/{kind:mood|journal}/{entryId}", handle_entry_update)
    router.add_delete("/api/{kind:mood|journal}/{entryId}", handle_entry_delete)

    router.add_post("/api/circles", handle_circle_create)
    router.add_get("/api/circles", handle_circle_list)
    router.add_get("/api/circles/{circleId}", handle_circle_get)
    router.add_put("/api/circles/{circleId}", handle_circle_update)
    router.add_post("/api/circles/{circleId}/join", handle_circle_join)
    router.add_post("/api/circles/{circleId}/leave", handle_circle_leave)
    router.add_post("/api/circles/{circleId}/requests/{userId}", handle_circle_request)
    router.add_post("/api/circles/{circleId}/kick/{userId}", handle_circle_kick)
    router.add_post("/api/circles/{circleId}/promote/{userId}", handle_circle_promote)

    router.add_post("/api/posts", handle_post_create)
    router.add_get("/api/posts/circle/{circleId}", handle_post_list)
    router.add_put("/api/posts/{postId}", handle_post_update)
    router.add_delete("/api/posts/{postId}", handle_post_delete)
    router.add_post("/api/posts/{postId}/like", handle_post_like)
    router.add_post("/api/posts/{postId}/comments", handle_post_comment)
    router.add_post("/api/posts/{postId}/report", handle_post_report)
    router.add_delete("/api/posts/{postId}/reports", handle_post_dismiss_reports)

    router.add_post("/api/questions", handle_question_create)
    router.add_get("/api/questions/circle/{circleId}", handle_question_list)
    router.add_put("/api/questions/{questionId}", handle_question_update)
    router.add_delete("/api/questions/{questionId}", handle_question_delete)
    router.add_post("/api/questions/{questionId}/upvote", handle_question_upvote)
    router.add_post("/api/questions/{questionId}/answers", handle_answer_create)
    router.add_delete("/api/questions/{questionId}/answers/{answerId}", handle_answer_delete)
    router.add_post("/api/questions/{questionId}/answers/{answerId}/upvote", handle_answer_upvote)

    router.add_post("/api/messages", handle_message_send)
    # Registered before the history route so "conversations" is not taken as a user id.
    router.add_get("/api/messages/conversations/{userId}", handle_conversation_list)
    router.add_put("/api/messages/conversations/{userId}/{partnerId}/read", handle_conversation_read)
    router.add_get("/api/messages/{userId}/{otherId}", handle_message_history)

    router.add_post("/api/notifications", handle_notification_send)
    router.add_get("/api/notifications/{userId}", handle_notification_list)
    router.add_put("/api/notifications/mark-read/{notificationId}", handle_notification_mark_read)
    router.add_put("/api/notifications/{userId}/read-all", handle_notification_read_all)
