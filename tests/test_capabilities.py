from decimal import Decimal

import pytest

from sagaflow.capabilities.inventory import RELEASED, ItemLine
from sagaflow.capabilities.notification import NotificationService
from sagaflow.capabilities.payment import REFUNDED
from sagaflow.capabilities.processing import DocumentProcessor, classify_text
from sagaflow.capabilities.review import ReviewDesk
from sagaflow.capabilities.shipping import CANCELLED
from sagaflow.pipeline.context import Decision

# --- Payment ---


async def test_charge_replays_by_idempotency_key(payment):
    first = await payment.charge("CUST-001", Decimal("25.00"), idempotency_key="wf-1:PAYMENT")
    second = await payment.charge("CUST-001", Decimal("25.00"), idempotency_key="wf-1:PAYMENT")

    assert first.success and second.success
    assert first.token == second.token
    assert len(payment._store) == 1


async def test_charge_rejections(payment):
    declined = await payment.charge("CUST-BROKE", Decimal("5.00"))
    negative = await payment.charge("CUST-001", Decimal("0"))

    assert not declined.success
    assert "insufficient funds" in declined.message
    assert not negative.success
    assert "must be positive" in negative.message


async def test_refund_twice_is_single_effect(payment):
    charged = await payment.charge("CUST-001", Decimal("10.00"))

    await payment.refund(charged.token)
    await payment.refund(charged.token)
    await payment.refund("TXN-unknown")

    assert payment.get(charged.token).status == REFUNDED


# --- Inventory ---


async def test_reserve_is_all_or_nothing(inventory):
    result = await inventory.reserve(
        [ItemLine("PRODUCT-001", 2), ItemLine("SOLD-OUT", 1)], idempotency_key="wf-2:INVENTORY"
    )

    assert not result.success
    assert result.message == "Product SOLD-OUT out of stock"
    assert inventory.available("PRODUCT-001") == 10


async def test_release_twice_restores_stock_once(inventory):
    reserved = await inventory.reserve([ItemLine("PRODUCT-001", 4)])
    assert inventory.available("PRODUCT-001") == 6

    await inventory.release(reserved.token)
    await inventory.release(reserved.token)

    assert inventory.available("PRODUCT-001") == 10
    assert inventory.get(reserved.token).status == RELEASED


async def test_reserve_replays_by_idempotency_key(inventory):
    first = await inventory.reserve([ItemLine("PRODUCT-001", 1)], idempotency_key="k")
    second = await inventory.reserve([ItemLine("PRODUCT-001", 1)], idempotency_key="k")

    assert first.token == second.token
    assert inventory.available("PRODUCT-001") == 9


async def test_reserve_empty_items(inventory):
    result = await inventory.reserve([])

    assert not result.success
    assert result.message == "No items to reserve"


# --- Shipping ---


async def test_schedule_and_cancel(shipping):
    scheduled = await shipping.schedule("order-1", "1 Main St", idempotency_key="wf-3:SHIPPING")
    again = await shipping.schedule("order-1", "1 Main St", idempotency_key="wf-3:SHIPPING")

    assert scheduled.token.startswith("TRACK-")
    assert again.token == scheduled.token
    assert "estimated_delivery" in scheduled.data

    await shipping.cancel(scheduled.token)
    await shipping.cancel(scheduled.token)
    assert shipping.get(scheduled.token).status == CANCELLED


async def test_schedule_rejections(shipping):
    blank = await shipping.schedule("order-2", "   ")
    blocked = await shipping.schedule("order-3", "42 Deep Street, ATLANTIS")

    assert blank.message == "Shipping address is required"
    assert not blocked.success


# --- Notification ---


async def test_notification_history_is_bounded():
    service = NotificationService(history_limit=2)
    for i in range(3):
        await service.send_cancellation("CUST-001", f"order-{i}", "test")

    assert len(service.history) == 2
    assert service.history[-1].subject == "Order order-2 cancelled"


# --- Storage ---


async def test_persist_is_idempotent_per_instance(storage):
    first = await storage.persist("wf-doc-1", "a.txt", "text/plain", b"hello")
    second = await storage.persist("wf-doc-1", "a.txt", "text/plain", b"hello")

    assert first.success
    assert first.token == second.token
    assert await storage.retrieve(int(first.token)) == b"hello"


async def test_persist_rejects_empty_and_oversized(storage):
    empty = await storage.persist("wf-doc-2", "empty.txt", "text/plain", b"")
    huge = await storage.persist("wf-doc-3", "huge.bin", "application/pdf", b"x" * (2 * 1024 * 1024))

    assert empty.message == "Document content cannot be empty"
    assert huge.message == "Document size exceeds 1MB limit"


async def test_delete_is_soft_and_idempotent(storage):
    stored = await storage.persist("wf-doc-4", "b.txt", "text/plain", b"bye")
    doc_id = int(stored.token)

    await storage.delete(doc_id)
    await storage.delete(doc_id)
    await storage.delete(9999)
    await storage.update_status(doc_id, "FAILED")

    doc = await storage.get(doc_id)
    assert doc.status == "DELETED"
    assert doc.deleted_at is not None
    with pytest.raises(LookupError):
        await storage.retrieve(doc_id)


async def test_delete_cancels_open_review(storage):
    stored = await storage.persist("wf-doc-8", "e.txt", "text/plain", b"pending")
    desk = ReviewDesk(storage, NotificationService())
    await desk.request_review(int(stored.token), "e.txt")

    await storage.delete(int(stored.token))

    assert await storage.pending_reviews() == []


async def test_retrieve_missing_document(storage):
    with pytest.raises(LookupError):
        await storage.retrieve(12345)


async def test_review_lifecycle(storage):
    stored = await storage.persist("wf-doc-5", "c.txt", "text/plain", b"contract terms")
    notifications = NotificationService()
    desk = ReviewDesk(storage, notifications)

    token = await desk.request_review(int(stored.token), "c.txt")
    pending = await storage.pending_reviews()

    assert token.startswith(f"review-{stored.token}-")
    assert [p["correlation_token"] for p in pending] == [token]
    assert len(notifications.sent("REVIEW_REQUIRED")) == 1

    await storage.complete_review(token, Decision(approved=True, comments="fine"))
    assert await storage.pending_reviews() == []


# --- Processing ---


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("INVOICE #42 payment due", "INVOICE"),
        ("Service agreement and terms", "CONTRACT"),
        ("Quarterly analysis", "REPORT"),
        ("Dear Sir", "LETTER"),
    ],
)
def test_classify_text(text, expected):
    document_type, confidence, _ = classify_text(text)

    assert document_type == expected
    assert 0 < confidence < 1


def test_classify_tags():
    _, _, tags = classify_text("URGENT and confidential legal notice")

    assert tags == ["urgent", "confidential", "legal"]


async def test_ocr_reports_progress(storage):
    stored = await storage.persist("wf-doc-6", "long.txt", "text/plain", b"a" * 25_000)
    processor = DocumentProcessor(storage)
    messages: list[str] = []

    result = await processor.perform_ocr(int(stored.token), progress=messages.append)

    assert result.data["pages"] == 2
    assert messages[0] == "Starting OCR processing"
    assert "Processing page 2/2" in messages
    assert messages[-1] == "OCR processing completed"
    assert len(result.data["text"]) == 25_000


async def test_ocr_keeps_characters_spanning_pages(storage):
    # The 2-byte "é" straddles the first 10,000-byte page boundary
    content = b"a" * 9_999 + "é".encode() + b"b" * 10_000
    stored = await storage.persist("wf-doc-9", "accents.txt", "text/plain", content)

    result = await DocumentProcessor(storage).perform_ocr(int(stored.token))

    assert result.data["pages"] == 2
    assert result.data["text"] == content.decode()


async def test_metadata_extraction_leaves_status_alone(storage):
    stored = await storage.persist("wf-doc-10", "f.txt", "text/plain", b"two words")

    result = await DocumentProcessor(storage).extract_metadata(int(stored.token))

    assert result.data["word_count"] == 2
    assert (await storage.get(int(stored.token))).status == "UPLOADED"


async def test_finalize_writes_review_outcome(storage):
    stored = await storage.persist("wf-doc-7", "d.txt", "text/plain", b"report")
    processor = DocumentProcessor(storage)

    result = await processor.finalize(int(stored.token), Decision(approved=False, comments="no"))

    assert result.token == "REJECTED"
    assert (await storage.get(int(stored.token))).status == "REJECTED"
