# ページオブジェクト
# アプリ固有のページクラスが継承する BasePage を提供

from .base import BasePage

__all__ = ["BasePage"]
