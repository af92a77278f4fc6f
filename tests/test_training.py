import pickle

import numpy as np

from devmatrix.training import GpuMLP, train_mlp_regression


def _quadratic_data():
    x = np.linspace(-1, 1, 64, dtype=np.float32).reshape(-1, 1)
    y = 2 * (x ** 2) + 1
    return x, y


def test_train_step_matches_numpy_gradients(ctx) -> None:
    rng = np.random.default_rng(0)
    x = rng.standard_normal((8, 3), dtype=np.float32)
    y = rng.standard_normal((8, 2), dtype=np.float32)
    lr = 0.05

    model = GpuMLP(ctx, 3, 5, 2, seed=1)
    try:
        before = model.state_dict()
        w1, b1, w2, b2 = before["w1"], before["b1"], before["w2"], before["b2"]

        # Reference forward/backward in NumPy (loss = per-column MSE summed).
        z1 = x @ w1 + b1
        a1 = np.maximum(z1, 0.0)
        pred = a1 @ w2 + b2
        expected_loss = float(((pred - y) ** 2).mean(axis=0).sum())
        d_y = 2.0 * (pred - y) / x.shape[0]
        g_w2 = a1.T @ d_y
        g_b2 = d_y.sum(axis=0)
        d_z1 = (d_y @ w2.T) * (z1 > 0)
        g_w1 = x.T @ d_z1
        g_b1 = d_z1.sum(axis=0)

        loss = model.train_step(x, y, lr=lr)
        after = model.state_dict()
    finally:
        model.close()

    np.testing.assert_allclose(loss, expected_loss, rtol=1e-4)
    np.testing.assert_allclose(after["w1"], w1 - lr * g_w1, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(after["b1"], b1 - lr * g_b1, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(after["w2"], w2 - lr * g_w2, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(after["b2"], b2 - lr * g_b2, rtol=1e-4, atol=1e-5)


def test_training_loss_decreases(ctx) -> None:
    x, y = _quadratic_data()

    history = train_mlp_regression(x, y, epochs=40, batch_size=16, lr=0.1, hidden=16, log_every=0, ctx=ctx)

    assert len(history) == 40
    assert all(np.isfinite(history))
    assert history[-1] < history[0] * 0.5
    # The caller's context stays open.
    assert not ctx.closed


def test_predict_and_save(ctx, tmp_path) -> None:
    x, _ = _quadratic_data()
    model = GpuMLP(ctx, 1, 4, 1, seed=0)
    try:
        pred = model.predict(x)
        assert pred.shape == (64, 1)
        assert pred.dtype == np.float32

        path = tmp_path / "mlp.pkl"
        model.save(str(path))
    finally:
        model.close()

    with open(path, "rb") as f:
        payload = pickle.load(f)
    assert payload["arch"] == "GpuMLP"
    assert payload["hidden"] == 4
    assert payload["state_dict"]["w1"].shape == (1, 4)
    assert payload["state_dict"]["b2"].shape == (1,)


def test_parameters_are_float32(ctx) -> None:
    x, y = _quadratic_data()
    model = GpuMLP(ctx, 1, 8, 1, seed=3)
    try:
        for name, value in model.state_dict().items():
            assert value.dtype == np.float32, name
        assert np.isfinite(model.train_step(x, y, lr=0.05))
        assert model.predict(x).dtype == np.float32
    finally:
        model.close()


def test_train_mlp_regression_owns_its_context(tmp_path, capsys) -> None:
    x, y = _quadratic_data()
    save_path = tmp_path / "model.pkl"

    history = train_mlp_regression(
        x, y, epochs=3, batch_size=32, backend="numpy", log_every=1, save_path=str(save_path)
    )

    out = capsys.readouterr().out
    assert "Training backend: numpy" in out
    assert "Epoch 0:" in out
    assert len(history) == 3
    assert save_path.exists()
