"""
Turn selection
回合选择 - 按玩家顺序轮转
"""

import random
from typing import List, Optional, Sequence

from truthdare.models.room import Player


def select_next_player(
    players: Sequence[Player],
    current_player_id: Optional[str],
    rng: Optional[random.Random] = None,
) -> Optional[Player]:
    """
    选择下一位行动的玩家

    - 空名单返回 None
    - 只有一名玩家时总是返回该玩家
    - 没有当前玩家（首轮）时随机选择
    - 否则返回名单中当前玩家的下一位，末尾回到第一位；
      当前玩家已不在名单中时返回第一位
    """
    if not players:
        return None
    if len(players) == 1:
        return players[0]

    if current_player_id is None:
        return (rng or random).choice(list(players))

    ids: List[str] = [p.id for p in players]
    if current_player_id not in ids:
        return players[0]

    next_index = (ids.index(current_player_id) + 1) % len(players)
    return players[next_index]


def starts_new_round(
    players: Sequence[Player],
    next_player: Player,
    previous_player_id: Optional[str],
) -> bool:
    """A new round begins when rotation lands on the first roster entry, except on the opening pick"""
    if previous_player_id is None or not players:
        return False
    return players[0].id == next_player.id
