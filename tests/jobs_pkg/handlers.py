def process_news(payload, progress):
    progress(100)
    return {"success": True, "articleId": payload["articleId"]}


def subscribers(tick):
    return [{"userId": user} for user in ("u1", "u2")]
