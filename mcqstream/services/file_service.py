import base64
import binascii
import io
import logging
import asyncio

import fitz  # PyMuPDF
from PIL import Image
import google.generativeai as genai

from mcqstream.core.config import settings
from mcqstream.core.errors import ErrorKind, ServiceError
from mcqstream.schemas import Material

logger = logging.getLogger(__name__)

if settings.GOOGLE_API_KEY:
    genai.configure(api_key=settings.GOOGLE_API_KEY, transport="rest")

IMAGE_MIME_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/heic"}
PDF_MIME_TYPE = "application/pdf"
MAX_PDF_PAGES = 200


def decode_file_data(file_data: str) -> bytes:
    """Strict base64 decode of an inbound payload (data-URL prefixes are tolerated)."""
    if "," in file_data and file_data.lstrip().startswith("data:"):
        file_data = file_data.split(",", 1)[1]
    try:
        return base64.b64decode(file_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ServiceError(ErrorKind.VALIDATION, "file_data is not valid base64.") from e


async def extract_text_from_material(material: Material) -> str:
    """
    Plain text for models that cannot read inline files.
    PDF via PyMuPDF, images via Gemini Vision OCR.
    """
    if not material.is_file:
        return material.text or ""

    content = decode_file_data(material.file_data)
    mime_type = (material.mime_type or "").lower()

    try:
        if mime_type == PDF_MIME_TYPE:
            text = await _extract_from_pdf(content)
        elif mime_type in IMAGE_MIME_TYPES:
            text = await _extract_from_image(content)
        else:
            raise ServiceError(
                ErrorKind.VALIDATION, "Unsupported format. Use PDF, PNG, JPG, JPEG, WEBP, or HEIC."
            )
    except ServiceError:
        raise
    except ValueError as e:
        raise ServiceError(ErrorKind.EMPTY_GENERATION, str(e)) from e
    except Exception as e:
        logger.error(f"[FILE] ✗ Text extraction failed for {mime_type}: {e}")
        raise ServiceError(ErrorKind.TRANSPORT, f"Processing error: {e}") from e

    if not text or not text.strip():
        raise ServiceError(ErrorKind.EMPTY_GENERATION, "No text found in file.")
    return text.strip()


async def _extract_from_pdf(content: bytes) -> str:
    """
    Extract text from PDF using PyMuPDF (fitz).
    Runs in a thread pool to avoid blocking the async event loop.
    """
    def _process_pdf(data: bytes) -> str:
        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                if doc.page_count == 0:
                    raise ValueError("PDF has no pages.")

                if doc.page_count > MAX_PDF_PAGES:
                    raise ValueError(f"PDF too large (>{MAX_PDF_PAGES} pages).")

                text_blocks = []
                for page in doc:
                    page_text = page.get_text("text")
                    if page_text.strip():
                        text_blocks.append(page_text)

                if not text_blocks:
                    raise ValueError("No text content found in PDF.")

                return "\n\n".join(text_blocks)
        except ValueError:
            raise
        except Exception as e:
            raise ValueError(f"PDF extraction failed: {e}")

    return await asyncio.to_thread(_process_pdf, content)


async def _extract_from_image(content: bytes) -> str:
    """OCR through Gemini Vision."""
    if not settings.GOOGLE_API_KEY:
        raise ServiceError(ErrorKind.TRANSPORT, "Google API Key missing for image OCR")

    try:
        image = Image.open(io.BytesIO(content))
    except Exception as e:
        raise ValueError(f"Unreadable image: {e}")

    w, h = image.size
    if w < 50 or h < 50:
        raise ValueError("Image too small to contain readable text.")

    model = genai.GenerativeModel(
        settings.GEMINI_VISION_MODEL,
        generation_config={"temperature": 0},
    )
    prompt = (
        "Extract all legible text from this image accurately. "
        "Maintain the structure where possible."
    )

    response = await asyncio.to_thread(model.generate_content, [prompt, image])
    result = response.text.strip()

    if not result or result.lower() in ["no text found", "no_text_found"]:
        raise ValueError("No readable text in image.")
    return result
