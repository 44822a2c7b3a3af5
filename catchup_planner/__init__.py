"""
Catchup Planner - 複数人の日程調整エンジン

主催者が日付範囲と招待者を指定してプランを作成し、各参加者が空いている
30分スロットを登録します。以下の機能を提供します：
- スロット量子化（08:00-21:00 の作業時間帯）
- 参加者ごとの空き時間ストア（カレンダー/手動の出所を保持）
- 重複集計と最適スロットのランキング
- プランのライフサイクル管理（確定・キャンセル・アーカイブ）
"""

__version__ = "0.1.0"
