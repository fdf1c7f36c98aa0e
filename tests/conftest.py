import pytest
import torch

# Noisy samples of a constant velocity trajectory (x(t) ~ t, 50 steps)
CONSTANT_VELOCITY = [
    4.1197562567e-3, 0.0425693863809, 0.068300714589, 0.0405101295827, 0.126443441742,
    0.146305267313, 0.123678691453, 0.174932688492, 0.185480330659, 0.242586125084,
    0.187496446031, 0.200026736477, 0.231323231169, 0.296367148827, 0.346741438277,
    0.331459458843, 0.362953102013, 0.358752638268, 0.398501193212, 0.37266661233,
    0.388564058792, 0.447522020435, 0.415011179514, 0.443361055209, 0.502046547104,
    0.567444528685, 0.543432907723, 0.589687950694, 0.629186849757, 0.564720426473,
    0.61129592866, 0.687679641741, 0.674542600655, 0.697367821044, 0.739385394814,
    0.749901030749, 0.716634130263, 0.738790240739, 0.821427529362, 0.796846728212,
    0.851898340934, 0.855480993681, 0.900346106844, 0.925431927901, 0.859363087941,
    0.880360337071, 0.890950783338, 0.963543040113, 0.944225479693, 0.98403617954,
]  # fmt: skip

# Noisy samples of a parabola (50 steps)
PARABOLA = [
    0.0485694034653, 0.0548351524804, 0.0468714337096, 0.0908087881534, 0.051225640846,
    0.0708488560165, 0.146347751812, 0.140626529574, 0.134085408885, 0.110884293681,
    0.19610569709, 0.183388635803, 0.148803241238, 0.217864356027, 0.222439529756,
    0.209136150549, 0.198903389241, 0.194575938483, 0.197107383272, 0.204531935394,
    0.196555787681, 0.201144475741, 0.280319559433, 0.236979888452, 0.269754762039,
    0.264708451603, 0.214612639898, 0.248609772499, 0.241965948258, 0.212717299595,
    0.204831656858, 0.220083048679, 0.206838229965, 0.255738430021, 0.191641359558,
    0.20726122237, 0.17845543904, 0.134668298598, 0.15157034733, 0.151581453466,
    0.136233367302, 0.14290164864, 0.145580395438, 0.062240665641, 0.0772342338583,
    0.117692816251, 0.0437538411719, 0.0877472884267, 5.8772802522e-3, 7.1591578256e-3,
]  # fmt: skip


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


@pytest.fixture
def constant_velocity_samples() -> torch.Tensor:
    return torch.tensor(CONSTANT_VELOCITY, dtype=torch.float64)


@pytest.fixture
def parabola_samples() -> torch.Tensor:
    return torch.tensor(PARABOLA, dtype=torch.float64)


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
