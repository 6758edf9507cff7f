"""Parsed ActivityStreams shapes.

``Activity.payload`` resolves the dynamic ``object`` field once, at parse
time, into one of ``ActorReference`` / ``NestedFollow`` / ``StructuredNote``.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

PUBLIC_COLLECTION = "https://www.w3.org/ns/activitystreams#Public"


def _id_of(value: Any) -> Optional[str]:
    # AS2 允許以內嵌物件取代 URI
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class ActorReference(BaseModel):
    uri: str


class NestedFollow(BaseModel):
    id: Optional[str] = None
    actor: Optional[str] = None
    object: Optional[str] = None


class StructuredNote(BaseModel):
    id: Optional[str] = None
    type: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    
    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


Payload = Union[ActorReference, NestedFollow, StructuredNote]


class Activity(BaseModel):
    """Inbound activity"""
    model_config = ConfigDict(extra="allow")
    
    id: Optional[str] = None
    type: str = ""
    actor: Optional[str] = None
    object: Any = None
    target: Any = None
    
    @field_validator("actor", mode="before")
    @classmethod
    def _flatten_actor(cls, value: Any) -> Optional[str]:
        return _id_of(value)
    
    @field_validator("type", mode="before")
    @classmethod
    def _first_type(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, list):
            return value[0] if value else ""
        return value
    
    @property
    def payload(self) -> Optional[Payload]:
        obj = self.object
        if isinstance(obj, str):
            return ActorReference(uri=obj)
        elif isinstance(obj, dict):
            obj_type = obj.get("type")
            if isinstance(obj_type, str) and obj_type.lower() == "follow":
                return NestedFollow(
                    id=_id_of(obj.get("id")),
                    actor=_id_of(obj.get("actor")),
                    object=_id_of(obj.get("object")),
                )
            else:
                return StructuredNote(
                    id=_id_of(obj.get("id")),
                    type=obj_type if isinstance(obj_type, str) else None,
                    data=obj,
                )
        return None
    
    @property
    def object_id(self) -> Optional[str]:
        """object 的 URI（字串或內嵌物件的 id）"""
        return _id_of(self.object)


class PublicKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    
    id: Optional[str] = None
    owner: Optional[str] = None
    public_key_pem: Optional[str] = Field(default=None, alias="publicKeyPem")


class RemoteActor(BaseModel):
    """Remote actor document as fetched over signed GET"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    
    id: str
    type: Optional[str] = None
    name: Optional[str] = None
    preferred_username: Optional[str] = Field(default=None, alias="preferredUsername")
    summary: Optional[str] = None
    icon: Any = None
    inbox: Optional[str] = None
    outbox: Optional[str] = None
    followers: Optional[str] = None
    following: Optional[str] = None
    endpoints: Optional[Dict[str, Any]] = None
    public_key: Optional[PublicKey] = Field(default=None, alias="publicKey")
    
    @field_validator("public_key", mode="before")
    @classmethod
    def _first_key(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value[0] if value else None
        return value
    
    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.preferred_username
    
    @property
    def avatar_url(self) -> Optional[str]:
        icon = self.icon
        if isinstance(icon, list):
            icon = icon[0] if icon else None
        if isinstance(icon, dict):
            icon = icon.get("url")
        return icon if isinstance(icon, str) else None


def as_list(value: Any) -> List[Any]:
    """to / cc / tag 可能是單一值或陣列"""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]
