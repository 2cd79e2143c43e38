from pydantic import BaseModel


class MountViewRequest(BaseModel):
    lab_id: str


class TextInput(BaseModel):
    text: str = ""
