import itertools
import unittest

from aiohttp.test_utils import TestClient, TestServer

from mindbridge.config import ServerConfig
from mindbridge.ws_transport import create_app


class HttpApiTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(ServerConfig(ping_interval_s=3600), now_func=itertools.count(1_000, 10).__next__)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _create_user(self, username: str) -> str:
        resp = await self.client.post("/api/users", json={"username": username})
        self.assertEqual(resp.status, 201)
        return (await resp.json())["id"]

    async def _call(self, method: str, path: str, actor: str | None = None, **kwargs):
        headers = {"X-User-Id": actor} if actor else {}
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        return resp.status, await resp.json()

    async def test_health(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_users_and_conflicts(self):
        user_id = await self._create_user("river")

        status, body = await self._call("POST", "/api/users", json={"username": "river"})
        self.assertEqual((status, body["code"]), (409, "conflict"))

        status, body = await self._call("GET", f"/api/users/{user_id}")
        self.assertEqual(status, 200)
        self.assertEqual(body["stats"], {"moodCount": 0, "journalCount": 0})

        status, body = await self._call("GET", "/api/users/usr_missing")
        self.assertEqual((status, body["code"]), (404, "not_found"))

    async def test_profile_update_and_delete(self):
        user_id = await self._create_user("river")
        other = await self._create_user("stone")
        await self._call("POST", "/api/mood", user_id, json={"content": "calm"})
        await self._call("POST", "/api/journal", user_id, json={"content": "long day"})

        changes = {"bio": "walker", "mantra": "breathe", "interests": ["yoga"], "ghostMode": True}
        status, body = await self._call("PUT", f"/api/users/{user_id}", other, json=changes)
        self.assertEqual((status, body["code"]), (403, "unauthorized"))
        status, body = await self._call("PUT", f"/api/users/{user_id}", user_id, json=changes)
        self.assertEqual(status, 200)
        self.assertEqual((body["mantra"], body["interests"], body["ghostMode"]), ("breathe", ["yoga"], True))
        self.assertEqual(body["stats"], {"moodCount": 1, "journalCount": 1})

        status, body = await self._call("PUT", f"/api/users/{user_id}", user_id, json={"username": "stone"})
        self.assertEqual((status, body["code"]), (409, "conflict"))
        status, body = await self._call("PUT", f"/api/users/{user_id}", user_id, json={"bio": None})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))

        status, _ = await self._call("DELETE", f"/api/users/{user_id}", other)
        self.assertEqual(status, 403)
        status, _ = await self._call("DELETE", f"/api/users/{user_id}", user_id)
        self.assertEqual(status, 200)
        status, _ = await self._call("GET", f"/api/users/{user_id}")
        self.assertEqual(status, 404)
        status, body = await self._call("GET", f"/api/users/{user_id}/entries", user_id)
        self.assertEqual((body["moods"], body["journals"]), ([], []))

    async def test_mistyped_fields_are_invalid_requests(self):
        owner = await self._create_user("owner")
        receiver = await self._create_user("receiver")
        status, circle = await self._call("POST", "/api/circles", owner, json={"name": "Typed Circle"})

        status, body = await self._call("PUT", f"/api/circles/{circle['id']}", owner, json={"description": None})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))
        status, body = await self._call(
            "POST", "/api/circles", owner, json={"name": "Other Circle", "description": {"x": 1}}
        )
        self.assertEqual((status, body["code"]), (400, "invalid_request"))

        status, body = await self._call(
            "POST", "/api/notifications", owner, json={"receiverId": receiver, "type": "like", "message": {"x": 1}}
        )
        self.assertEqual((status, body["code"]), (400, "invalid_request"))
        status, inbox = await self._call("GET", f"/api/notifications/{receiver}")
        self.assertEqual(inbox["notifications"], [])

        status, body = await self._call("POST", "/api/users", json={"username": "typed", "email": 5})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))

    async def test_malformed_json_is_invalid_request(self):
        resp = await self.client.post("/api/users", data=b"{not json", headers={"Content-Type": "application/json"})
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")

        status, body = await self._call("POST", "/api/users", json={})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))

    async def test_entries_are_viewer_scoped(self):
        owner = await self._create_user("owner")
        friend = await self._create_user("friend")
        stranger = await self._create_user("stranger")

        status, circle = await self._call("POST", "/api/circles", owner, json={"name": "Evening Circle"})
        self.assertEqual(status, 201)
        status, body = await self._call("POST", f"/api/circles/{circle['id']}/join", friend)
        self.assertEqual((status, body["status"]), (200, "joined"))

        created = {}
        for visibility in ("Private", "Circles", "Public"):
            status, entry = await self._call(
                "POST", "/api/mood", owner, json={"content": visibility, "visibility": visibility, "score": 4}
            )
            self.assertEqual(status, 201)
            self.assertEqual(entry["score"], 4)
            created[visibility] = entry["id"]

        status, body = await self._call("GET", f"/api/mood/user/{owner}", friend)
        self.assertEqual(status, 200)
        self.assertEqual({e["visibility"] for e in body["entries"]}, {"Circles", "Public"})

        status, body = await self._call("GET", f"/api/users/{owner}/entries", stranger)
        self.assertEqual([e["visibility"] for e in body["moods"]], ["Public"])
        self.assertEqual(body["journals"], [])

        status, body = await self._call("GET", f"/api/mood/{created['Private']}", friend)
        self.assertEqual((status, body["code"]), (404, "not_found"))
        status, body = await self._call("GET", f"/api/journal/{created['Public']}", friend)
        self.assertEqual(status, 404)

        status, body = await self._call("PUT", f"/api/mood/{created['Public']}", friend, json={"content": "x"})
        self.assertEqual((status, body["code"]), (403, "unauthorized"))
        status, body = await self._call(
            "PUT", f"/api/mood/{created['Public']}", owner, json={"visibility": "Private"}
        )
        self.assertEqual((status, body["visibility"]), (200, "Private"))
        status, body = await self._call("PUT", f"/api/mood/{created['Public']}", owner, json={"visibility": "Nope"})
        self.assertEqual(status, 400)

        status, _ = await self._call("DELETE", f"/api/mood/{created['Circles']}", owner)
        self.assertEqual(status, 200)
        status, body = await self._call("GET", f"/api/users/{owner}", owner)
        self.assertEqual(body["stats"]["moodCount"], 2)

    async def test_circle_administration(self):
        owner = await self._create_user("owner")
        hopeful = await self._create_user("hopeful")

        status, body = await self._call("POST", "/api/circles", None, json={"name": "No Owner"})
        self.assertEqual(status, 403)

        status, circle = await self._call(
            "POST", "/api/circles", owner, json={"name": "Private Place", "visibility": "private", "tags": ["calm"]}
        )
        circle_id = circle["id"]
        status, body = await self._call("POST", f"/api/circles/{circle_id}/join", hopeful)
        self.assertEqual(body["status"], "requested")

        status, body = await self._call(
            "POST", f"/api/circles/{circle_id}/requests/{hopeful}", hopeful, json={"approve": True}
        )
        self.assertEqual(status, 403)
        status, body = await self._call(
            "POST", f"/api/circles/{circle_id}/requests/{hopeful}", owner, json={"approve": True}
        )
        self.assertEqual((status, body["status"]), (200, "approved"))

        status, body = await self._call("POST", f"/api/circles/{circle_id}/promote/{hopeful}", owner)
        self.assertEqual(status, 200)
        status, body = await self._call("GET", f"/api/circles/{circle_id}")
        self.assertEqual(sorted(body["admins"]), sorted([owner, hopeful]))

        status, body = await self._call("POST", f"/api/circles/{circle_id}/kick/{owner}", hopeful)
        self.assertEqual(status, 403)
        status, body = await self._call("POST", f"/api/circles/{circle_id}/leave", owner)
        self.assertEqual(status, 403)

        status, body = await self._call("GET", "/api/circles?tag=calm")
        self.assertEqual([c["id"] for c in body["circles"]], [circle_id])

        status, body = await self._call("PUT", f"/api/circles/{circle_id}", owner, json={"name": "Open Place"})
        self.assertEqual(body["name"], "Open Place")

    async def test_posts_questions_and_notifications(self):
        owner = await self._create_user("owner")
        member = await self._create_user("member")
        status, circle = await self._call("POST", "/api/circles", owner, json={"name": "Daily Check-in"})
        await self._call("POST", f"/api/circles/{circle['id']}/join", member)

        status, post = await self._call(
            "POST", "/api/posts", member, json={"circleId": circle["id"], "content": "first!"}
        )
        self.assertEqual((status, post["notified"]), (201, 1))
        status, body = await self._call("POST", f"/api/posts/{post['id']}/like", owner)
        self.assertEqual(body, {"liked": True})
        status, comment = await self._call("POST", f"/api/posts/{post['id']}/comments", owner, json={"text": "hi"})
        self.assertEqual(status, 201)
        status, body = await self._call("GET", f"/api/posts/circle/{circle['id']}")
        self.assertEqual(body["posts"][0]["likes"], [owner])
        self.assertEqual(body["posts"][0]["comments"][0]["id"], comment["id"])

        status, question = await self._call(
            "POST", "/api/questions", owner, json={"circleId": circle["id"], "title": "Sleep", "body": "How?"}
        )
        self.assertEqual(status, 201)
        status, answer = await self._call(
            "POST", f"/api/questions/{question['id']}/answers", member, json={"text": "Early nights"}
        )
        status, body = await self._call(
            "POST", f"/api/questions/{question['id']}/answers/{answer['id']}/upvote", owner
        )
        self.assertEqual(body, {"upvoted": True})

        status, inbox = await self._call("GET", f"/api/notifications/{member}")
        self.assertEqual([n["type"] for n in inbox["notifications"]], ["question", "comment", "like"])
        self.assertEqual(inbox["unreadCount"], 3)

        first = inbox["notifications"][0]["id"]
        status, _ = await self._call("PUT", f"/api/notifications/mark-read/{first}")
        self.assertEqual(status, 200)
        status, body = await self._call("PUT", f"/api/notifications/{member}/read-all")
        self.assertEqual(body, {"updated": 2})
        status, body = await self._call("PUT", "/api/notifications/mark-read/ntf_missing")
        self.assertEqual(status, 404)

        status, inbox = await self._call("GET", f"/api/notifications/{owner}")
        self.assertEqual([n["type"] for n in inbox["notifications"]], ["answer", "post"])

    async def test_messages_and_conversations(self):
        alice = await self._create_user("alice")
        bob = await self._create_user("bob")

        status, body = await self._call("POST", "/api/messages", bob, json={"receiverId": alice, "text": "hi"})
        self.assertEqual((status, body["delivered"]), (201, False))
        await self._call("POST", "/api/messages", bob, json={"receiverId": alice, "text": "still there?"})
        status, body = await self._call("POST", "/api/messages", None, json={"receiverId": alice, "text": "?"})
        self.assertEqual(status, 403)

        status, body = await self._call("GET", f"/api/messages/conversations/{alice}")
        self.assertEqual(status, 200)
        [summary] = body["conversations"]
        self.assertEqual(summary["id"], bob)
        self.assertEqual(summary["username"], "bob")
        self.assertEqual(summary["lastMessage"], "still there?")
        self.assertEqual(summary["unreadCount"], 2)

        status, body = await self._call("PUT", f"/api/messages/conversations/{alice}/{bob}/read")
        self.assertEqual(body, {"updated": 2})
        status, body = await self._call("PUT", f"/api/messages/conversations/{alice}/{bob}/read")
        self.assertEqual(body, {"updated": 0})

        status, body = await self._call("GET", f"/api/messages/{alice}/{bob}")
        self.assertEqual([m["text"] for m in body["messages"]], ["hi", "still there?"])
        self.assertTrue(all(m["read"] for m in body["messages"]))


if __name__ == "__main__":
    unittest.main()
