"""Alias tables for resource types and actions.

Aliases are matched case-insensitively. ``RESOURCE_ALIASES_BY_LENGTH`` is
sorted longest first, so that specific aliases such as ``定时任务`` win over
general ones such as ``任务``.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from ..schemas.intent import IntentCategory, ResourceType

RESOURCE_TYPE_ALIASES: Dict[str, ResourceType] = {
    "prompt": ResourceType.prompt,
    "prompts": ResourceType.prompt,
    "提示词": ResourceType.prompt,
    "提示": ResourceType.prompt,
    "模板": ResourceType.prompt,
    "模版": ResourceType.prompt,
    "dataset": ResourceType.dataset,
    "datasets": ResourceType.dataset,
    "数据集": ResourceType.dataset,
    "数据": ResourceType.dataset,
    "测试数据": ResourceType.dataset,
    "model": ResourceType.model,
    "models": ResourceType.model,
    "模型": ResourceType.model,
    "ai模型": ResourceType.model,
    "provider": ResourceType.provider,
    "providers": ResourceType.provider,
    "供应商": ResourceType.provider,
    "提供商": ResourceType.provider,
    "模型供应商": ResourceType.provider,
    "evaluator": ResourceType.evaluator,
    "evaluators": ResourceType.evaluator,
    "评估器": ResourceType.evaluator,
    "评估": ResourceType.evaluator,
    "评估方法": ResourceType.evaluator,
    "task": ResourceType.task,
    "tasks": ResourceType.task,
    "任务": ResourceType.task,
    "测试任务": ResourceType.task,
    "测试": ResourceType.task,
    "scheduled_task": ResourceType.scheduled_task,
    "定时任务": ResourceType.scheduled_task,
    "定时": ResourceType.scheduled_task,
    "调度任务": ResourceType.scheduled_task,
    "cron": ResourceType.scheduled_task,
    "alert_rule": ResourceType.alert_rule,
    "alert": ResourceType.alert_rule,
    "告警规则": ResourceType.alert_rule,
    "告警": ResourceType.alert_rule,
    "报警": ResourceType.alert_rule,
    "notify_channel": ResourceType.notify_channel,
    "notification": ResourceType.notify_channel,
    "通知渠道": ResourceType.notify_channel,
    "通知": ResourceType.notify_channel,
    "渠道": ResourceType.notify_channel,
    "schema": ResourceType.schema,
    "结构": ResourceType.schema,
    "结构化": ResourceType.schema,
    "input_schema": ResourceType.input_schema,
    "输入结构": ResourceType.input_schema,
    "output_schema": ResourceType.output_schema,
    "输出结构": ResourceType.output_schema,
    "dashboard": ResourceType.dashboard,
    "仪表盘": ResourceType.dashboard,
    "工作台": ResourceType.dashboard,
    "首页": ResourceType.dashboard,
    "settings": ResourceType.settings,
    "设置": ResourceType.settings,
    "系统设置": ResourceType.settings,
    "配置": ResourceType.settings,
    "monitor": ResourceType.monitor,
    "监控": ResourceType.monitor,
    "监控中心": ResourceType.monitor,
}

RESOURCE_ALIASES_BY_LENGTH: List[Tuple[str, ResourceType]] = sorted(
    RESOURCE_TYPE_ALIASES.items(), key=lambda kv: len(kv[0]), reverse=True
)

ACTION_ALIASES: Dict[str, str] = {
    "打开": "navigate",
    "去": "navigate",
    "进入": "navigate",
    "跳转": "navigate",
    "访问": "navigate",
    "open": "navigate",
    "go": "navigate",
    "goto": "navigate",
    "查看": "view",
    "看": "view",
    "显示": "view",
    "查询": "view",
    "view": "view",
    "show": "view",
    "get": "view",
    "list": "view",
    "创建": "create",
    "新建": "create",
    "添加": "create",
    "新增": "create",
    "create": "create",
    "add": "create",
    "new": "create",
    "编辑": "edit",
    "修改": "edit",
    "更新": "edit",
    "改": "edit",
    "edit": "edit",
    "update": "edit",
    "modify": "edit",
    "删除": "delete",
    "移除": "delete",
    "删掉": "delete",
    "去掉": "delete",
    "delete": "delete",
    "remove": "delete",
    "del": "delete",
    "运行": "execute",
    "执行": "execute",
    "跑": "execute",
    "启动": "execute",
    "run": "execute",
    "execute": "execute",
    "start": "execute",
    "试试": "test",
    "试一下": "test",
    "test": "test",
    "try": "test",
    "导出": "export",
    "下载": "export",
    "保存": "export",
    "export": "export",
    "download": "export",
    "对比": "compare",
    "比较": "compare",
    "比对": "compare",
    "compare": "compare",
    "diff": "compare",
}

ACTION_ALIASES_BY_LENGTH: List[Tuple[str, str]] = sorted(
    ACTION_ALIASES.items(), key=lambda kv: len(kv[0]), reverse=True
)

RESOURCE_TYPE_LABELS: Dict[ResourceType, str] = {
    ResourceType.prompt: "提示词",
    ResourceType.dataset: "数据集",
    ResourceType.model: "模型",
    ResourceType.provider: "模型供应商",
    ResourceType.evaluator: "评估器",
    ResourceType.task: "测试任务",
    ResourceType.scheduled_task: "定时任务",
    ResourceType.alert_rule: "告警规则",
    ResourceType.notify_channel: "通知渠道",
    ResourceType.schema: "结构",
    ResourceType.input_schema: "输入结构",
    ResourceType.output_schema: "输出结构",
    ResourceType.dashboard: "工作台",
    ResourceType.settings: "设置",
    ResourceType.monitor: "监控",
}

CATEGORY_LABELS: Dict[IntentCategory, str] = {
    IntentCategory.navigation: "导航",
    IntentCategory.creation: "创建",
    IntentCategory.modification: "修改",
    IntentCategory.deletion: "删除",
    IntentCategory.query: "查询",
    IntentCategory.execution: "执行",
    IntentCategory.comparison: "对比",
    IntentCategory.export: "导出",
    IntentCategory.clarification: "澄清",
    IntentCategory.unknown: "未知",
}


def normalize_action(action: str) -> str:
    """Map an action alias to its canonical verb; unknown actions pass through."""
    key = action.strip()
    return ACTION_ALIASES.get(key.lower(), ACTION_ALIASES.get(key, key))


def resource_type_label(resource_type: Optional[str]) -> str:
    if not resource_type:
        return "资源"
    try:
        return RESOURCE_TYPE_LABELS[ResourceType(resource_type)]
    except (ValueError, KeyError):
        return resource_type
