from sqlmodel import SQLModel


# 通用消息
class Message(SQLModel):
    message: str
