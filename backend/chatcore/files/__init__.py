"""Attachment upload and storage.

Uploaded files are written to local disk under ``{upload_dir}/{user_id}/``
with UUID-based names; metadata is tracked in DuckDB. The resulting
download URL is what a ``file`` message carries in ``attachments``.

Supported file types:
- Images: jpg, jpeg, png, gif, webp, svg
- Documents: pdf, doc(x), xls(x), txt, csv
- Audio: mp3, wav, ogg, m4a, flac
- Any other file under the configured size limit (20MB by default)
"""
