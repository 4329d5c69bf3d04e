from sagaflow.models.document import Document, DocumentReview

__all__ = ["Document", "DocumentReview"]
