import io
from datetime import date

import pytest

from errors import NotFoundError, ValidationError
from models import Transaction, TransactionType
from receipts import ReceiptStore, disposition_for, iter_file, media_type_for


def make_txn(receipt_path=None) -> Transaction:
    return Transaction(
        id=7,
        user_id=1,
        amount_cents=1_000,
        type=TransactionType.expense,
        date=date(2025, 8, 1),
        receipt_path=receipt_path,
    )


def test_validate_accepts_images_and_pdf(tmp_path) -> None:
    store = ReceiptStore(tmp_path)
    assert store.validate("scan.PDF", "application/pdf") == ".pdf"
    assert store.validate("photo.jpg", "image/jpeg") == ".jpg"
    assert store.validate("photo.png", "image/png; charset=binary") == ".png"


@pytest.mark.parametrize(
    "filename, content_type",
    [
        ("virus.exe", "application/octet-stream"),
        ("photo.png", "application/pdf"),
        ("notes.txt", "text/plain"),
        ("", "image/png"),
    ],
)
def test_validate_rejects_other_files(tmp_path, filename, content_type) -> None:
    with pytest.raises(ValidationError):
        ReceiptStore(tmp_path).validate(filename, content_type)


def test_save_then_resolve(tmp_path) -> None:
    store = ReceiptStore(tmp_path)
    name = store.save("scan.pdf", "application/pdf", io.BytesIO(b"%PDF-1.4 data"))
    assert name.startswith("receipt-")
    assert name.endswith(".pdf")

    receipt = store.resolve(make_txn(name))
    assert receipt.media_type == "application/pdf"
    assert receipt.size == len(b"%PDF-1.4 data")
    assert receipt.content_disposition == f'inline; filename="{name}"'
    assert b"".join(iter_file(receipt.path)) == b"%PDF-1.4 data"


def test_oversize_upload_leaves_nothing_behind(tmp_path) -> None:
    store = ReceiptStore(tmp_path, max_bytes=10)
    with pytest.raises(ValidationError) as exc:
        store.save("big.png", "image/png", io.BytesIO(b"x" * 11))
    assert exc.value.title == "Receipt too large"
    assert list(tmp_path.iterdir()) == []


def test_resolve_distinguishes_missing_association_and_missing_file(tmp_path) -> None:
    store = ReceiptStore(tmp_path)
    with pytest.raises(NotFoundError) as no_path:
        store.resolve(make_txn())
    assert no_path.value.title == "No receipt found"

    with pytest.raises(NotFoundError) as gone:
        store.resolve(make_txn("receipt-1-abc.png"))
    assert gone.value.title == "Receipt file not found"


def test_paths_outside_upload_dir_are_refused(tmp_path) -> None:
    store = ReceiptStore(tmp_path / "uploads")
    (tmp_path / "secret.pdf").write_bytes(b"secret")
    with pytest.raises(NotFoundError):
        store.resolve(make_txn("../secret.pdf"))
    store.remove("../secret.pdf")
    assert (tmp_path / "secret.pdf").exists()


def test_remove_is_idempotent(tmp_path) -> None:
    store = ReceiptStore(tmp_path)
    name = store.save("a.png", "image/png", io.BytesIO(b"png"))
    store.remove(name)
    store.remove(name)
    store.remove(None)
    assert not (tmp_path / name).exists()


def test_media_type_helpers() -> None:
    assert media_type_for("x.jpeg") == "image/jpeg"
    assert media_type_for("x.bin") == "application/octet-stream"
    assert disposition_for("application/octet-stream", "x.bin") == (
        'attachment; filename="x.bin"'
    )
