from __future__ import annotations

from typing import Callable, Dict, List

from .errors import NotFound
from .models import Answer, Question, _now_ms, new_id
from .sqlite_backend import SQLiteBackend


_COLUMNS = "question_id, circle_id, author_id, title, body, created_at_ms, updated_at_ms"


class SQLiteQuestionStore:
    """Circle Q&A: questions, answers and their upvote sets."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def create(self, circle_id: str, author_id: str, title: str, body: str) -> Question:
        if not title.strip() or not body.strip():
            raise ValueError("question title and body required")
        now_ms = self._now()
        question = Question(
            question_id=new_id("qst"),
            circle_id=circle_id,
            author_id=author_id,
            title=title,
            body=body,
            created_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        with self._backend.guarded() as conn:
            conn.execute(
                f"INSERT INTO questions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (question.question_id, circle_id, author_id, title, body, now_ms, now_ms),
            )
        return question

    def get(self, question_id: str) -> Question:
        questions = self._load("question_id=?", (question_id,))
        if not questions:
            raise NotFound("question not found")
        return questions[0]

    def list_for_circle(self, circle_id: str) -> List[Question]:
        return self._load("circle_id=?", (circle_id,))

    def update(self, question_id: str, *, title: str | None = None, body: str | None = None) -> Question:
        question = self.get(question_id)
        with self._backend.guarded() as conn:
            conn.execute(
                "UPDATE questions SET title=?, body=?, updated_at_ms=? WHERE question_id=?",
                (
                    question.title if title is None else title,
                    question.body if body is None else body,
                    self._now(),
                    question_id,
                ),
            )
        return self.get(question_id)

    def delete(self, question_id: str) -> None:
        with self._backend.guarded() as conn:
            deleted = conn.execute("DELETE FROM questions WHERE question_id=?", (question_id,)).rowcount
        if not deleted:
            raise NotFound("question not found")

    def add_answer(self, question_id: str, author_id: str, text: str) -> Answer:
        if not text.strip():
            raise ValueError("answer text required")
        self.get(question_id)
        answer = Answer(
            answer_id=new_id("ans"),
            question_id=question_id,
            author_id=author_id,
            text=text,
            created_at_ms=self._now(),
        )
        with self._backend.guarded() as conn:
            conn.execute(
                "INSERT INTO answers (answer_id, question_id, author_id, text, created_at_ms) VALUES (?, ?, ?, ?, ?)",
                (answer.answer_id, question_id, author_id, text, answer.created_at_ms),
            )
        return answer

    def delete_answer(self, question_id: str, answer_id: str) -> None:
        with self._backend.guarded() as conn:
            deleted = conn.execute(
                "DELETE FROM answers WHERE answer_id=? AND question_id=?", (answer_id, question_id)
            ).rowcount
        if not deleted:
            raise NotFound("answer not found")

    def toggle_question_upvote(self, question_id: str, user_id: str) -> bool:
        self.get(question_id)
        return self._backend.toggle_membership("question_upvotes", (question_id, user_id))

    def toggle_answer_upvote(self, question_id: str, answer_id: str, user_id: str) -> bool:
        if self.get(question_id).answer(answer_id) is None:
            raise NotFound("answer not found")
        return self._backend.toggle_membership("answer_upvotes", (answer_id, user_id))

    def _load(self, where: str, params: tuple) -> List[Question]:
        with self._backend.guarded() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM questions WHERE {where} ORDER BY created_at_ms DESC, question_id DESC",
                params,
            ).fetchall()
            questions: Dict[str, Question] = {
                row[0]: Question(
                    question_id=row[0],
                    circle_id=row[1],
                    author_id=row[2],
                    title=row[3],
                    body=row[4],
                    created_at_ms=row[5],
                    updated_at_ms=row[6],
                )
                for row in rows
            }
            if not questions:
                return []
            ids = list(questions)
            placeholders = ", ".join("?" for _ in ids)
            for row in conn.execute(
                f"SELECT question_id, user_id FROM question_upvotes WHERE question_id IN ({placeholders}) ORDER BY rowid",
                ids,
            ):
                questions[row[0]].upvotes.append(row[1])
            answers: Dict[str, Answer] = {}
            for row in conn.execute(
                f"""
                SELECT answer_id, question_id, author_id, text, created_at_ms FROM answers
                WHERE question_id IN ({placeholders}) ORDER BY created_at_ms, answer_id
                """,
                ids,
            ):
                answer = Answer(
                    answer_id=row[0], question_id=row[1], author_id=row[2], text=row[3], created_at_ms=row[4]
                )
                answers[answer.answer_id] = answer
                questions[answer.question_id].answers.append(answer)
            if answers:
                answer_ids = list(answers)
                answer_placeholders = ", ".join("?" for _ in answer_ids)
                for row in conn.execute(
                    f"SELECT answer_id, user_id FROM answer_upvotes WHERE answer_id IN ({answer_placeholders}) ORDER BY rowid",
                    answer_ids,
                ):
                    answers[row[0]].upvotes.append(row[1])
        return list(questions.values())
