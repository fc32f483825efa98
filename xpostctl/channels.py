"""Static per-platform configuration."""

from typing import Dict, FrozenSet
from .models import ChannelId

ENTRY_URLS: Dict[ChannelId, str] = {
    ChannelId.CSDN: "https://mp.csdn.net/mp_blog/creation/editor",
    ChannelId.TENCENT_CLOUD_DEV: "https://cloud.tencent.com/developer/article/write",
    ChannelId.CNBLOGS: "https://i.cnblogs.com/posts/edit",
    ChannelId.OSCHINA: "https://www.oschina.net/blog/write",
    ChannelId.WOSHIPM: "https://www.woshipm.com/writing",
    ChannelId.MOWEN: "https://note.mowen.cn/editor",
    ChannelId.SSPAI: "https://sspai.com/write",
    ChannelId.BAIJIAHAO: "https://baijiahao.baidu.com/builder/rc/edit?type=news&is_from_cms=1",
    ChannelId.TOUTIAO: "https://mp.toutiao.com/profile_v4/graphic/publish",
    ChannelId.FEISHU_DOCS: "https://wuxinxuexi.feishu.cn/drive/folder/PyWAfSFwrlMgiydvlHectMn2nSd",
}

# Platforms whose editor has a dedicated "original source URL" field.
SOURCE_URL_FIELD: FrozenSet[ChannelId] = frozenset({ChannelId.CSDN})


def entry_url(channel_id: ChannelId) -> str:
    return ENTRY_URLS[channel_id]
