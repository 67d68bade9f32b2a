"""
命名服務：邀請碼產生與正規化

純計算邏輯，不涉及狀態轉換
"""
import re
import secrets

# 排除 0/O 與 1/I，口頭念出時不會混淆
INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 6

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


def generate_invite_code() -> str:
    """
    產生隨機 6 字元邀請碼

    範例：K7QH2M, ZP4XNE

    注意：
    - 這裡不檢查唯一性（由呼叫者負責）
    - 32^6 ≈ 10.7 億種組合，碰撞機率極低
    """
    return ''.join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def normalize_invite_code(raw: str) -> str:
    """
    查詢前正規化用戶輸入

    移除非英數字元並轉大寫，"k7q-h2m" 與 "K7Q H2M" 都會變成 "K7QH2M"。
    """
    return _NON_ALPHANUMERIC.sub('', raw or '').upper()
