"""
部署事件通知

流水线的每条日志和每次状态变化都会发布到这里，
订阅者（例如推送接口）按部署任务ID注册回调，无需改动流水线内部。
"""
import logging
import threading

logger = logging.getLogger(__name__)

_subscribers = {}
_lock = threading.Lock()


def subscribe(deployment_id, callback):
    """注册回调 callback(deployment_id, event)"""
    with _lock:
        _subscribers.setdefault(deployment_id, []).append(callback)


def unsubscribe(deployment_id, callback=None):
    """取消订阅；不传 callback 时移除该部署任务的全部订阅"""
    with _lock:
        if callback is None:
            _subscribers.pop(deployment_id, None)
            return
        callbacks = _subscribers.get(deployment_id, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            _subscribers.pop(deployment_id, None)


def publish(deployment_id, event):
    """通知订阅者，回调异常只记录不影响调用方"""
    with _lock:
        callbacks = list(_subscribers.get(deployment_id, ()))
    for callback in callbacks:
        try:
            callback(deployment_id, event)
        except Exception as e:
            logger.error(f'部署事件回调失败: deployment_id={deployment_id}, error={e}', exc_info=True)
