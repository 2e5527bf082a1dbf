from . import batch, main, results, review


def register_routes(app):
    app.register_blueprint(main.bp)
    app.register_blueprint(results.bp)
    app.register_blueprint(batch.bp)
    app.register_blueprint(review.bp)
