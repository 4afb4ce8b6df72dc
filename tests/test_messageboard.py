"""
Unit tests for the append-only message board.
"""

import re
import threading
from datetime import datetime

import pytest

from gbbsd import MAX_MESSAGE_LENGTH, EmptyMessage, InvalidUsername, MessageBoard, MessageTooLong, StoreError

LINE_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] [^:]+: .+$")


def test_new_board_is_empty_and_file_exists(tmp_path):
    path = tmp_path / "guestbook.txt"
    board = MessageBoard(str(path))

    assert path.exists()
    assert board.get_messages() == ()


def test_post_formats_line(board):
    line = board.post_message("alice", "hello", now=datetime(2024, 3, 1, 9, 5, 7))

    assert line == "[2024-03-01 09:05:07] alice: hello"
    assert board.get_messages() == (line,)


def test_messages_returned_in_append_order(board):
    for i in range(5):
        board.post_message("alice", f"message {i}")

    bodies = [line.split(": ", 1)[1] for line in board.get_messages()]
    assert bodies == [f"message {i}" for i in range(5)]


def test_get_messages_is_repeatable(board):
    board.post_message("alice", "hello")
    assert board.get_messages() == board.get_messages()


def test_empty_message_rejected(board):
    with pytest.raises(EmptyMessage):
        board.post_message("alice", "")
    assert board.get_messages() == ()


def test_length_boundary(board):
    board.post_message("alice", "x" * MAX_MESSAGE_LENGTH)

    with pytest.raises(MessageTooLong):
        board.post_message("alice", "x" * (MAX_MESSAGE_LENGTH + 1))
    assert len(board.get_messages()) == 1


def test_line_breaks_collapsed(board):
    board.post_message("alice", "first\r\nsecond\nthird")

    messages = board.get_messages()
    assert len(messages) == 1
    assert messages[0].endswith("alice: first second third")


def test_existing_content_preserved(tmp_path):
    path = tmp_path / "guestbook.txt"
    path.write_text("[2024-01-01 00:00:00] old: entry\n", encoding="utf-8")

    board = MessageBoard(str(path))
    board.post_message("alice", "new entry")

    messages = board.get_messages()
    assert messages[0] == "[2024-01-01 00:00:00] old: entry"
    assert messages[1].endswith("alice: new entry")


def test_concurrent_posts_are_whole_lines(board):
    def poster(n):
        for i in range(20):
            board.post_message(f"user{n}", f"post {i} from {n}")

    threads = [threading.Thread(target=poster, args=(n,)) for n in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    messages = board.get_messages()
    assert len(messages) == 200
    assert all(LINE_RE.match(line) for line in messages)


def test_missing_file_raises_store_error(tmp_path):
    path = tmp_path / "guestbook.txt"
    board = MessageBoard(str(path))
    path.unlink()

    with pytest.raises(StoreError):
        board.get_messages()


@pytest.mark.parametrize("author", ["mallory\n[2024-01-01 00:00:00] admin", "bob\rsmith", ""])
def test_author_cannot_break_lines(board, author):
    with pytest.raises(InvalidUsername):
        board.post_message(author, "hi")
    assert board.get_messages() == ()


@pytest.mark.parametrize("body", ["\n", "\r\n\r\n", " \n "])
def test_body_of_only_line_breaks_is_empty(board, body):
    with pytest.raises(EmptyMessage):
        board.post_message("alice", body)
    assert board.get_messages() == ()
