"""
chatroom
~~~~~~~~

一对一实时咨询聊天室服务。
"""
