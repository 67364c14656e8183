from __future__ import annotations
import base64
import mimetypes
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .settings import settings


class DocumentError(RuntimeError):
	pass


class DocumentNotFound(DocumentError):
	pass


@dataclass
class LoadedDocument:
	name: str
	mime_type: str
	data: bytes

	@property
	def base64_data(self) -> str:
		return base64.b64encode(self.data).decode("utf-8")

	def inline_part(self) -> Dict[str, Dict[str, str]]:
		return {"inlineData": {"mimeType": self.mime_type, "data": self.base64_data}}


# Per-exam document cache so extraction and grading read the file once.
# Least recently used entries are dropped past settings.document_cache_size.
_documents: OrderedDict[str, LoadedDocument] = OrderedDict()


def normalize_file_url(url: str) -> str:
	if url.startswith("http://") or url.startswith("https://"):
		file_name = url.rstrip("/").split("/")[-1]
		return f"/uploads/files/{file_name}" if file_name else url
	if not url.startswith("/uploads/"):
		return "/uploads/files/" + url.lstrip("/")
	return url


def resolve_upload_path(url: str, upload_dir: Optional[str] = None) -> Path:
	root = Path(upload_dir or settings.upload_dir).resolve()
	relative = normalize_file_url(url)[len("/uploads/"):]
	path = (root / relative).resolve()
	if root != path and root not in path.parents:
		raise DocumentError(f"File path escapes upload directory: {url}")
	return path


def guess_mime_type(name: str) -> str:
	mime, _ = mimetypes.guess_type(name)
	return mime or "application/octet-stream"


def load_document(exam_id: str, name: str, url: str, *, upload_dir: Optional[str] = None, use_cache: bool = True) -> LoadedDocument:
	if use_cache:
		cached = _documents.get(exam_id)
		if cached is not None and cached.name == name:
			_documents.move_to_end(exam_id)
			return cached
	path = resolve_upload_path(url, upload_dir)
	if not path.is_file():
		raise DocumentNotFound(f"Không thể tải nội dung tệp: {name}")
	doc = LoadedDocument(name=name, mime_type=guess_mime_type(path.name), data=path.read_bytes())
	if use_cache:
		_remember(exam_id, doc)
	return doc


def _remember(exam_id: str, doc: LoadedDocument) -> None:
	_documents[exam_id] = doc
	_documents.move_to_end(exam_id)
	while len(_documents) > max(settings.document_cache_size, 1):
		_documents.popitem(last=False)


def cached_document(exam_id: str) -> Optional[LoadedDocument]:
	return _documents.get(exam_id)


def forget_document(exam_id: str) -> None:
	_documents.pop(exam_id, None)
