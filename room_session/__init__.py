"""
room_session
~~~~~~~~~~~~

房间会话协调器 —— 多客户端并发加入 / 离开 / 治理同一个容量受限的临时房间。
"""
