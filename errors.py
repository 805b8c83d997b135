"""伝票処理のエラー"""


class SlipError(Exception):
    """伝票処理の基底エラー"""

    def __init__(self, message, detail=None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(SlipError):
    """通信前に検出する入力・設定エラー（状態は変更しない）"""


class GuestSelectionRequired(ValidationError):
    """ゲストがいる卓でキャスト料金を追加する際、対象ゲストの選択が必要"""


class PersistenceError(SlipError):
    """保存処理（DB / API）の失敗"""


class PartialBatchFailure(PersistenceError):
    """再計算の削除→再作成が途中で失敗した（一部のみ反映されている可能性あり）"""

    def __init__(self, message, completed_steps=0, detail=None):
        super().__init__(message, detail)
        self.completed_steps = completed_steps


class NotFoundError(PersistenceError):
    """対象のセッション・注文が存在しない"""
