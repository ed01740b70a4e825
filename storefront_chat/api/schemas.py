from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ChatMessage(BaseModel):
    role: str
    content: str = ""
    products_shown: List[str] = []
    timestamp: Optional[float] = None


class CatalogItemPayload(BaseModel):
    id: str
    type: str = "product"
    title: str = ""
    text: str = ""
    embedding: List[float] = []
    price: Optional[float] = None
    in_stock: bool = True
    url: Optional[str] = None
    image_url: Optional[str] = None


class ScoredProductPayload(BaseModel):
    item: CatalogItemPayload
    similarity: float


class ContactInfo(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None


class TurnRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = None
    session_key: Optional[str] = None
    store_id: Optional[str] = None
    language: Optional[str] = None
    history: List[ChatMessage] = []
    catalog: List[CatalogItemPayload] = []
    contact: Optional[ContactInfo] = None
    use_llm: bool = True
    use_retrieval: bool = True


class ReplyRequest(BaseModel):
    conversation_id: str
    message: str
    reply: str
    language: Optional[str] = None
    history: List[ChatMessage] = []
    intent: Optional[Dict[str, Any]] = None
    products: List[ScoredProductPayload] = []


class ScoreRequest(BaseModel):
    messages: List[ChatMessage] = []


class EndRequest(BaseModel):
    store_id: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None
    product_names: List[str] = []
    extract_insights: bool = True
