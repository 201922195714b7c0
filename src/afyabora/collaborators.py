"""
Services the order workflow consumes but does not own: the product catalog
and file storage for prescription uploads.
"""
import asyncio
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

from afyabora.config import settings
from afyabora.errors import NotFound
from afyabora.schemas import Product


@dataclass
class UploadedFile:
    filename: str
    content: bytes
    content_type: Optional[str] = None


class Catalog(Protocol):
    async def get_product(self, product_id: str) -> Product: ...


class FileStorage(Protocol):
    async def store(self, upload: UploadedFile) -> str: ...


DEMO_PRODUCTS = [
    Product(id="p1", name="Panadol Extra", category="Medicine", price=50,
            description="Effective relief from pain and fever. Contains Paracetamol.",
            imageUrl="https://picsum.photos/400/400?random=1", stock=100,
            requiresPrescription=False, dosage="2 tablets every 4-6 hours",
            sideEffects="Rare skin rash"),
    Product(id="p2", name="Omron M2 Basic Blood Pressure Monitor", category="Medical Equipment",
            price=4500, description="Fully automatic upper arm blood pressure monitor.",
            imageUrl="https://picsum.photos/400/400?random=2", stock=15,
            requiresPrescription=False, manufacturer="Omron"),
    Product(id="p3", name="Amoxicillin 500mg", category="Medicine", price=300,
            description="Antibiotic used to treat bacterial infections.",
            imageUrl="https://picsum.photos/400/400?random=3", stock=50,
            requiresPrescription=True, dosage="1 capsule every 8 hours",
            sideEffects="Nausea, diarrhea"),
    Product(id="p4", name="Accu-Chek Active Glucometer", category="Diagnostics", price=2800,
            description="For quantitative determination of blood glucose values.",
            imageUrl="https://picsum.photos/400/400?random=4", stock=20,
            requiresPrescription=False),
    Product(id="p5", name="Vitamin C 1000mg + Zinc", category="Supplements", price=1200,
            description="Immunity booster effervescent tablets.",
            imageUrl="https://picsum.photos/400/400?random=5", stock=200,
            requiresPrescription=False),
    Product(id="p6", name="Salbutamol Inhaler", category="Medicine", price=450,
            description="Reliever inhaler for asthma.",
            imageUrl="https://picsum.photos/400/400?random=6", stock=30,
            requiresPrescription=True, dosage="2 puffs when needed"),
]


class InMemoryCatalog:
    def __init__(self, products: Iterable[Product] = DEMO_PRODUCTS):
        self._products: Dict[str, Product] = {p.id: p for p in products}

    async def get_product(self, product_id: str) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise NotFound("Product", product_id)
        return product.model_copy()


class LocalFileStorage:
    """Writes uploads to a directory served under <base_url>/uploads/."""

    def __init__(self, directory: str = settings.UPLOAD_DIR, base_url: str = settings.PUBLIC_BASE_URL):
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")

    @staticmethod
    def stored_name(filename: str) -> str:
        suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
        safe = re.sub(r"\s+", "-", Path(filename).name)
        return f"{suffix}-{safe}"

    async def store(self, upload: UploadedFile) -> str:
        if not upload.content:
            raise ValueError("No file uploaded")
        name = self.stored_name(upload.filename)
        await asyncio.to_thread(self._write, name, upload.content)
        return f"{self.base_url}/uploads/{name}"

    def _write(self, name: str, content: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / name).write_bytes(content)
