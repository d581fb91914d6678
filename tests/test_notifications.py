from clinic_sync.notifications_service import NotificationCenter


def test_push_builds_toast_item() -> None:
    center = NotificationCenter()
    item = center.error("Error", "Failed to load patients.")

    assert item["type"] == "error"
    assert item["title"] == "Error"
    assert item["message"] == "Failed to load patients."
    assert item["id"].startswith("error-")
    assert item["timestamp"].endswith("Z") or "+00:00" in item["timestamp"]


def test_unknown_type_and_blank_text_fall_back() -> None:
    center = NotificationCenter()
    item = center.push("", "", type="fatal")

    assert item["type"] == "info"
    assert item["title"] == "Notification"
    assert item["message"] == "An error occurred"


def test_history_is_bounded_and_newest_first() -> None:
    center = NotificationCenter(history_limit=2)
    center.push("one", "1")
    center.push("two", "2")
    center.push("three", "3")

    assert [item["title"] for item in center.recent()] == ["three", "two"]
    assert [item["title"] for item in center.recent(1)] == ["three"]


def test_dismiss_and_clear() -> None:
    center = NotificationCenter()
    first = center.success("Saved", "Patient created successfully.")
    center.warning("Connection lost", "Live updates are paused.")

    assert center.dismiss(first["id"]) is True
    assert center.dismiss(first["id"]) is False
    assert len(center.recent()) == 1
    center.clear()
    assert center.recent() == []


def test_listeners_receive_items_until_disposed() -> None:
    center = NotificationCenter()
    received = []

    def _broken(item):
        raise RuntimeError("listener bug")

    center.add_listener(_broken)
    disposer = center.add_listener(received.append)
    center.push("a", "1", payload={"kind": "patients"})
    disposer()
    center.push("b", "2")

    assert [item["title"] for item in received] == ["a"]
    assert received[0]["context"] == {"kind": "patients"}
